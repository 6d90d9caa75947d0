import os
import tempfile
from datetime import date
from unittest import mock

import httpx
from django.test import TestCase, override_settings
from rest_framework.test import APITestCase

from . import store
from .exceptions import (
    CircularDependencyError,
    DependencyDueDateError,
    ImageFetchError,
    TaskNotFound,
    TaskValidationError,
)
from .graph import (
    TaskNode,
    analyze,
    dependency_map,
    display_order,
    earliest_start,
    earliest_starts,
    find_cycles,
    would_create_cycle,
)
from .images import fetch_and_save_image, image_url
from .models import Task


def node(tid, deps=(), due=None, title=''):
    return TaskNode(id=tid, title=title or f'T{tid}', due_date=due, dependency_ids=tuple(deps))


class CycleCheckTests(TestCase):
    def test_reverse_edge_closes_cycle(self):
        """Task 1 depends on 2, so 2 may not depend on 1."""
        graph = {1: [2], 2: []}
        self.assertTrue(would_create_cycle(2, [1], graph))

    def test_self_dependency_is_a_cycle(self):
        self.assertTrue(would_create_cycle(4, [4], {}))

    def test_transitive_cycle(self):
        graph = {1: [2], 2: [3], 3: []}
        self.assertTrue(would_create_cycle(3, [1], graph))

    def test_acyclic_addition(self):
        graph = {1: [2], 2: [3], 3: []}
        self.assertFalse(would_create_cycle(1, [3], graph))
        self.assertFalse(would_create_cycle(4, [1, 2, 3], graph))

    def test_any_cyclic_member_rejects_whole_set(self):
        graph = {1: [2], 2: [], 3: []}
        self.assertTrue(would_create_cycle(2, [3, 1], graph))

    def test_terminates_on_malformed_graph(self):
        graph = {1: [2], 2: [1], 3: []}
        self.assertFalse(would_create_cycle(3, [1], graph))


class AnalyzerTests(TestCase):
    def assertValidPath(self, tasks, result):
        edges = dependency_map(tasks)
        self.assertEqual(len(result.critical_path), result.path_length)
        self.assertEqual(result.level_of[result.critical_path[0]], 0)
        for prev, nxt in zip(result.critical_path, result.critical_path[1:]):
            self.assertIn(prev, edges[nxt])

    def test_two_task_chain(self):
        tasks = [node(1, due=date(2024, 1, 10)), node(2, deps=[1], due=date(2024, 1, 20))]
        result = analyze(tasks)
        self.assertEqual(result.level_of, {1: 0, 2: 1})
        self.assertEqual(result.critical_path, [1, 2])
        self.assertEqual(result.path_length, 2)
        self.assertEqual(earliest_starts(tasks)[2], date(2024, 1, 11))

    def test_tie_between_roots_keeps_lowest_id(self):
        tasks = [node(1), node(2), node(3, deps=[1, 2])]
        result = analyze(tasks)
        self.assertEqual(result.level_of[3], 1)
        self.assertEqual(result.critical_path, [1, 3])
        self.assertEqual(result.path_length, 2)

    def test_tie_result_ignores_input_order(self):
        tasks = [node(3, deps=[2, 1]), node(2), node(1)]
        self.assertEqual(analyze(tasks).critical_path, [1, 3])

    def test_empty(self):
        result = analyze([])
        self.assertEqual(result.critical_path, [])
        self.assertEqual(result.path_length, 0)
        self.assertEqual(result.level_of, {})

    def test_level_follows_longest_chain(self):
        tasks = [node(1), node(2, deps=[1]), node(3, deps=[2]), node(4, deps=[1, 3])]
        result = analyze(tasks)
        self.assertEqual(result.level_of, {1: 0, 2: 1, 3: 2, 4: 3})
        self.assertEqual(result.critical_path, [1, 2, 3, 4])
        self.assertValidPath(tasks, result)

    def test_isolated_roots_give_single_task_path(self):
        result = analyze([node(5), node(3)])
        self.assertEqual(result.level_of, {3: 0, 5: 0})
        self.assertEqual(result.critical_path, [3])
        self.assertEqual(result.path_length, 1)

    def test_longest_component_wins(self):
        tasks = [
            node(1), node(2, deps=[1]),
            node(10), node(11, deps=[10]), node(12, deps=[11]),
        ]
        result = analyze(tasks)
        self.assertEqual(result.critical_path, [10, 11, 12])
        self.assertEqual(result.path_length, max(result.level_of.values()) + 1)
        self.assertValidPath(tasks, result)

    def test_unknown_dependency_ids_are_ignored(self):
        result = analyze([node(1, deps=[99])])
        self.assertEqual(result.level_of, {1: 0})
        self.assertEqual(result.critical_path, [1])

    def test_cyclic_tasks_are_left_out(self):
        tasks = [node(1), node(2, deps=[1, 3]), node(3, deps=[2])]
        result = analyze(tasks)
        self.assertEqual(result.level_of, {1: 0})
        self.assertEqual(result.critical_path, [1])
        self.assertEqual(result.path_length, 1)

    def test_fully_cyclic_graph_degrades_to_empty(self):
        result = analyze([node(1, deps=[2]), node(2, deps=[1])])
        self.assertEqual(result.as_dict(), {'critical_path': [], 'path_length': 0, 'level_of': {}})


class EarliestStartTests(TestCase):
    def test_absent_without_dependency_due_dates(self):
        self.assertIsNone(earliest_start([]))
        self.assertIsNone(earliest_start([node(1), node(2)]))

    def test_day_after_latest_dependency(self):
        deps = [node(1, due=date(2024, 2, 28)), node(2), node(3, due=date(2024, 1, 1))]
        self.assertEqual(earliest_start(deps), date(2024, 2, 29))

    def test_only_one_hop(self):
        # 3's own start ignores 1's due date behind 2
        tasks = [node(1, due=date(2024, 5, 1)), node(2, deps=[1]), node(3, deps=[2])]
        self.assertIsNone(earliest_starts(tasks)[3])

    def test_display_order(self):
        tasks = [
            node(1),
            node(2, due=date(2024, 1, 20)),
            node(3, deps=[4]),
            node(4, due=date(2024, 1, 5)),
            node(5),
        ]
        self.assertEqual([t.id for t in display_order(tasks)], [4, 3, 2, 1, 5])

    def test_same_start_falls_back_to_due_date(self):
        tasks = [
            node(1, due=date(2024, 1, 1)),
            node(2, deps=[1], due=date(2024, 3, 1)),
            node(3, deps=[1], due=date(2024, 2, 1)),
            node(4, deps=[1]),
        ]
        self.assertEqual([t.id for t in display_order(tasks)], [1, 3, 2, 4])


class FindCyclesTests(TestCase):
    def test_healthy_graph(self):
        self.assertEqual(find_cycles({1: [], 2: [1], 3: [1, 2]}), [])

    def test_reports_each_cycle_once(self):
        cycles = find_cycles({3: [1], 1: [2], 2: [3], 4: [4]})
        self.assertEqual(cycles, [[1, 2, 3, 1], [4, 4]])


class StoreTests(TestCase):
    def test_create_with_dependencies(self):
        a = store.create_task('Buy paint', due_date=date(2024, 1, 10))
        b = store.create_task('Paint fence', due_date=date(2024, 1, 20), dependency_ids=[a.id, a.id])
        self.assertEqual([d.id for d in b.dependencies.all()], [a.id])

    def test_blank_title_rejected(self):
        with self.assertRaises(TaskValidationError):
            store.create_task('   ')
        self.assertEqual(Task.objects.count(), 0)

    def test_late_dependency_leaves_nothing_behind(self):
        a = store.create_task('a', due_date=date(2024, 2, 1))
        with self.assertRaises(DependencyDueDateError) as ctx:
            store.create_task('b', due_date=date(2024, 1, 15), dependency_ids=[a.id])
        self.assertEqual(str(ctx.exception.detail), 'Dependency "a" has a due date after the new todo.')
        self.assertEqual(list(Task.objects.values_list('title', flat=True)), ['a'])

    def test_unknown_dependency_rejected(self):
        with self.assertRaises(TaskValidationError):
            store.create_task('orphan', dependency_ids=[12345])
        self.assertEqual(Task.objects.count(), 0)

    def test_reverse_edge_rejected(self):
        t2 = store.create_task('two')
        t1 = store.create_task('one', dependency_ids=[t2.id])
        with self.assertRaises(CircularDependencyError):
            store.replace_dependencies(t2.id, [t1.id])
        self.assertEqual(list(store.fetch_one(t2.id).dependencies.all()), [])

    def test_self_dependency_rejected(self):
        t = store.create_task('loop')
        with self.assertRaises(CircularDependencyError):
            store.replace_dependencies(t.id, [t.id])

    def test_rejected_replacement_keeps_old_set(self):
        t1 = store.create_task('one')
        t3 = store.create_task('three')
        t2 = store.create_task('two', dependency_ids=[t3.id])
        store.replace_dependencies(t1.id, [t2.id])
        with self.assertRaises(CircularDependencyError):
            store.replace_dependencies(t2.id, [t3.id, t1.id])
        self.assertEqual([d.id for d in store.fetch_one(t2.id).dependencies.all()], [t3.id])

    def test_replace_checks_due_dates(self):
        early = store.create_task('early', due_date=date(2024, 3, 1))
        late = store.create_task('late', due_date=date(2024, 4, 1))
        with self.assertRaises(DependencyDueDateError) as ctx:
            store.replace_dependencies(early.id, [late.id])
        self.assertIn('after the current todo', str(ctx.exception.detail))
        undated = store.create_task('undated')
        store.replace_dependencies(undated.id, [late.id])

    def test_replace_with_empty_list_clears(self):
        a = store.create_task('a')
        b = store.create_task('b', dependency_ids=[a.id])
        task = store.replace_dependencies(b.id, [])
        self.assertEqual(list(task.dependencies.all()), [])

    def test_delete_drops_edges_only(self):
        a = store.create_task('a')
        b = store.create_task('b', dependency_ids=[a.id])
        store.delete_task(a.id)
        self.assertEqual(list(store.fetch_one(b.id).dependencies.all()), [])
        self.assertEqual(store.dependency_graph(), {})

    def test_missing_task(self):
        with self.assertRaises(TaskNotFound):
            store.fetch_one(999)
        with self.assertRaises(TaskNotFound):
            store.replace_dependencies(999, [])
        with self.assertRaises(TaskNotFound):
            store.delete_task(999)

    def test_snapshot_feeds_analyzer(self):
        a = store.create_task('a', due_date=date(2024, 1, 10))
        b = store.create_task('b', due_date=date(2024, 1, 20), dependency_ids=[a.id])
        result = analyze(store.fetch_all())
        self.assertEqual(result.critical_path, [a.id, b.id])


class ImageTests(TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.media_root = tmp.name
        self.image_dir = os.path.join(tmp.name, 'images')

    def client_for(self, photos):
        def handler(request):
            if request.url.host == 'api.pexels.com':
                self.assertEqual(request.headers['Authorization'], 'secret')
                self.assertEqual(request.url.params['query'], 'walk the dog')
                return httpx.Response(200, json={'photos': photos})
            return httpx.Response(200, content=b'jpeg-bytes')
        return httpx.Client(transport=httpx.MockTransport(handler))

    def test_saves_first_photo(self):
        photos = [{'src': {'medium': 'https://images.pexels.com/photos/1/medium.jpeg'}}]
        with override_settings(PEXELS_API_KEY='secret', MEDIA_ROOT=self.media_root,
                               TODO_IMAGE_DIR=self.image_dir):
            path = fetch_and_save_image('walk the dog', 7, client=self.client_for(photos))
            self.assertEqual(path.read_bytes(), b'jpeg-bytes')
            self.assertEqual(image_url(7), '/media/images/7.jpg')
            self.assertIsNone(image_url(8))

    def test_no_url_outside_media_root(self):
        elsewhere = os.path.join(self.media_root, 'elsewhere')
        os.makedirs(elsewhere)
        with open(os.path.join(elsewhere, '7.jpg'), 'wb') as fh:
            fh.write(b'jpeg-bytes')
        with override_settings(MEDIA_ROOT=os.path.join(self.media_root, 'media'),
                               TODO_IMAGE_DIR=elsewhere):
            self.assertIsNone(image_url(7))

    def test_malformed_payload(self):
        client = httpx.Client(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, content=b'<html>captive portal</html>')))
        with override_settings(PEXELS_API_KEY='secret', TODO_IMAGE_DIR=self.image_dir):
            with self.assertRaises(ImageFetchError):
                fetch_and_save_image('walk the dog', 7, client=client)
            with self.assertRaises(ImageFetchError):
                fetch_and_save_image('walk the dog', 7, client=self.client_for([{'src': {}}]))

    def test_unwritable_image_dir(self):
        blocker = os.path.join(self.media_root, 'not-a-dir')
        with open(blocker, 'wb') as fh:
            fh.write(b'')
        photos = [{'src': {'medium': 'https://images.pexels.com/photos/1/medium.jpeg'}}]
        with override_settings(PEXELS_API_KEY='secret', TODO_IMAGE_DIR=os.path.join(blocker, 'images')):
            with self.assertRaises(ImageFetchError):
                fetch_and_save_image('walk the dog', 7, client=self.client_for(photos))

    def test_no_results(self):
        with override_settings(PEXELS_API_KEY='secret', TODO_IMAGE_DIR=self.image_dir):
            with self.assertRaises(ImageFetchError):
                fetch_and_save_image('walk the dog', 7, client=self.client_for([]))

    def test_missing_key(self):
        with override_settings(PEXELS_API_KEY='', TODO_IMAGE_DIR=self.image_dir):
            with self.assertRaises(ImageFetchError):
                fetch_and_save_image('walk the dog', 7)


class TodoApiTests(APITestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        settings = override_settings(PEXELS_API_KEY='', TODO_IMAGE_DIR=tmp.name)
        settings.enable()
        self.addCleanup(settings.disable)

    def create(self, **payload):
        return self.client.post('/api/todos/', payload, format='json')

    def test_create_and_list(self):
        with self.assertLogs('tasks.views', level='WARNING'):
            a = self.create(title='a', due_date='2024-01-10').data
        b = self.create(title='b', due_date='2024-01-20', dependency_ids=[a['id']])
        self.assertEqual(b.status_code, 201)
        self.assertEqual(b.data['earliest_start'], '2024-01-11')
        self.assertEqual([d['id'] for d in b.data['dependencies']], [a['id']])

        resp = self.client.get('/api/todos/')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['critical_path'], [a['id'], b.data['id']])
        self.assertEqual(resp.data['path_length'], 2)
        self.assertEqual(resp.data['level_of'], {a['id']: 0, b.data['id']: 1})
        todos = resp.data['todos']
        self.assertEqual([t['id'] for t in todos], [a['id'], b.data['id']])
        self.assertTrue(all(t['is_critical'] for t in todos))
        self.assertIsNone(todos[0]['image_url'])

    def test_create_requires_title(self):
        resp = self.create(title=' ')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data['code'], 'invalid')
        self.assertEqual(Task.objects.count(), 0)

    def test_create_with_late_dependency(self):
        a = self.create(title='a', due_date='2024-02-01').data
        resp = self.create(title='b', due_date='2024-01-15', dependency_ids=[a['id']])
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data['code'], 'dependency_due_date')
        self.assertEqual(Task.objects.count(), 1)

    def test_patch_rejects_cycle(self):
        two = self.create(title='two').data
        self.create(title='one', dependency_ids=[two['id']])
        one_id = Task.objects.get(title='one').id
        resp = self.client.patch(f"/api/todos/{two['id']}/", {'dependency_ids': [one_id]}, format='json')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data, {
            'error': 'Cannot add dependencies: would create circular dependency',
            'code': 'circular_dependency',
        })

    def test_patch_replaces_set(self):
        a = self.create(title='a').data
        b = self.create(title='b').data
        resp = self.client.patch(f"/api/todos/{b['id']}/", {'dependency_ids': [a['id']]}, format='json')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['level'], 1)
        self.assertEqual([d['id'] for d in resp.data['dependencies']], [a['id']])

    def test_missing_todo(self):
        resp = self.client.patch('/api/todos/999/', {'dependency_ids': []}, format='json')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.data['code'], 'not_found')
        self.assertEqual(self.client.get('/api/todos/999/').status_code, 404)

    def test_delete(self):
        a = self.create(title='a').data
        b = self.create(title='b', dependency_ids=[a['id']]).data
        resp = self.client.delete(f"/api/todos/{a['id']}/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data, {'message': 'Todo deleted'})
        self.assertEqual(self.client.delete(f"/api/todos/{a['id']}/").status_code, 404)
        self.assertEqual(self.client.get(f"/api/todos/{b['id']}/").data['dependencies'], [])

    def test_critical_path_empty(self):
        resp = self.client.get('/api/todos/critical-path/')
        self.assertEqual(resp.data, {'critical_path': [], 'path_length': 0, 'level_of': {}})

    def test_graph_feed(self):
        a = self.create(title='a').data
        b = self.create(title='b', dependency_ids=[a['id']]).data
        c = self.create(title='c').data
        resp = self.client.get('/api/todos/graph/')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data['links'], [{'source': a['id'], 'target': b['id'], 'is_critical': True}])
        flags = {n['id']: n['is_critical'] for n in resp.data['nodes']}
        self.assertEqual(flags, {a['id']: True, b['id']: True, c['id']: False})
        self.assertEqual(resp.data['cycles'], [])

    def test_create_survives_broken_image_service(self):
        real_client = httpx.Client

        def captive_portal(**kwargs):
            return real_client(transport=httpx.MockTransport(
                lambda request: httpx.Response(200, content=b'<html>captive portal</html>')))

        with override_settings(PEXELS_API_KEY='secret'), \
                mock.patch.object(httpx, 'Client', side_effect=captive_portal):
            with self.assertLogs('tasks.views', level='WARNING'):
                resp = self.create(title='x')
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.data['title'], 'x')
        self.assertEqual(Task.objects.count(), 1)

    def test_unexpected_error_is_generic_500(self):
        with mock.patch('tasks.store.fetch_all', side_effect=RuntimeError('disk I/O error at /var/db')):
            with self.assertLogs('tasks.exceptions', level='ERROR'):
                resp = self.client.get('/api/todos/critical-path/')
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.data, {'error': 'Internal server error', 'code': 'internal_error'})
        self.assertNotIn('/var/db', resp.content.decode())
