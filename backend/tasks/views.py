# views.py
import logging
from typing import Any, Dict, List

from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from . import store
from .exceptions import ImageFetchError
from .graph import TaskNode, analyze, dependency_map, display_order, earliest_starts, find_cycles
from .images import fetch_and_save_image, image_url
from .serializers import DependencyUpdateSerializer, TaskInputSerializer, TaskOutputSerializer

log = logging.getLogger(__name__)


def graph_context(nodes: List[TaskNode]) -> Dict[str, Any]:
    """Recompute every derived view of the graph from a fresh snapshot."""
    result = analyze(nodes)
    return {
        'analysis': result,
        'starts': earliest_starts(nodes),
        'level_of': result.level_of,
        'critical_path': result.critical_path,
        'image_url': image_url,
    }


def render_task(task) -> Dict[str, Any]:
    """Serialize one task with annotations computed over the whole graph."""
    context = graph_context(store.fetch_all())
    return TaskOutputSerializer(task, context=context).data


class TodoList(APIView):
    """
    GET /api/todos/
    Returns every todo in display order plus the critical-path analysis.

    POST /api/todos/
    Creates a todo with optional due date and dependency ids. Rejected (and
    nothing persisted) if the dependencies are unknown, cyclic, or due after it.
    """

    def get(self, request):
        tasks = store.fetch_all_tasks()
        nodes = [store.to_node(t) for t in tasks]
        context = graph_context(nodes)

        by_id = {t.id: t for t in tasks}
        ordered = [by_id[n.id] for n in display_order(nodes, context['starts'])]

        body = context['analysis'].as_dict()
        body['todos'] = TaskOutputSerializer(ordered, many=True, context=context).data
        return Response(body, status=status.HTTP_200_OK)

    def post(self, request):
        serializer = TaskInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        task = store.create_task(
            data['title'],
            due_date=data.get('due_date'),
            dependency_ids=data.get('dependency_ids') or [],
        )

        # the todo stands even if no picture can be found for it
        try:
            fetch_and_save_image(task.title, task.id)
        except ImageFetchError as exc:
            log.warning('failed to fetch/save image for todo %s: %s', task.id, exc)

        return Response(render_task(task), status=status.HTTP_201_CREATED)


class TodoDetail(APIView):
    """
    GET /api/todos/<id>/     single todo
    PATCH /api/todos/<id>/   replace its dependency set
    DELETE /api/todos/<id>/  delete it; dependents just lose the edge
    """

    def get(self, request, pk: int):
        return Response(render_task(store.fetch_one(pk)), status=status.HTTP_200_OK)

    def patch(self, request, pk: int):
        serializer = DependencyUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        task = store.replace_dependencies(pk, serializer.validated_data['dependency_ids'])
        return Response(render_task(task), status=status.HTTP_200_OK)

    def delete(self, request, pk: int):
        store.delete_task(pk)
        return Response({'message': 'Todo deleted'}, status=status.HTTP_200_OK)


class CriticalPathView(APIView):
    """GET /api/todos/critical-path/"""

    def get(self, request):
        return Response(analyze(store.fetch_all()).as_dict(), status=status.HTTP_200_OK)


class DependencyGraphView(APIView):
    """
    GET /api/todos/graph/
    Nodes and links for the graph visualization. A link is critical when both
    ends sit next to each other on the critical path.
    """

    def get(self, request):
        nodes = store.fetch_all()
        result = analyze(nodes)
        position = {tid: i for i, tid in enumerate(result.critical_path)}
        known = {n.id for n in nodes}

        links = []
        for n in nodes:
            for dep_id in n.dependency_ids:
                if dep_id not in known:
                    continue
                links.append({
                    'source': dep_id,
                    'target': n.id,
                    'is_critical': (dep_id in position and n.id in position
                                    and abs(position[dep_id] - position[n.id]) == 1),
                })

        return Response({
            'nodes': [
                {
                    'id': n.id,
                    'title': n.title,
                    'level': result.level_of.get(n.id),
                    'is_critical': n.id in position,
                }
                for n in nodes
            ],
            'links': links,
            'cycles': find_cycles(dependency_map(nodes)),
        }, status=status.HTTP_200_OK)
