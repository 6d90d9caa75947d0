from django.urls import path

from . import views

app_name = 'tasks'

urlpatterns = [
    path('todos/', views.TodoList.as_view(), name='todo-list'),
    path('todos/critical-path/', views.CriticalPathView.as_view(), name='critical-path'),
    path('todos/graph/', views.DependencyGraphView.as_view(), name='dependency-graph'),
    path('todos/<int:pk>/', views.TodoDetail.as_view(), name='todo-detail'),
]
