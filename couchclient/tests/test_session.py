# -*- coding: utf-8 -*-

import threading
import unittest

import requests

from couchclient import exceptions, interceptors, session
from couchclient.tests.fakecouch import BASE_URL, ScriptedAdapter, SequenceAdapter

TIMEOUT = 5


class RecordingDelegate(object):

    def __init__(self):
        self.responses = []
        self.chunks = []
        self.errors = []
        self.done = threading.Event()

    def received_response(self, response):
        self.responses.append(response)

    def received_data(self, data):
        self.chunks.append(data)

    def completed(self, error):
        self.errors.append(error)
        self.done.set()


class AlwaysRetry(interceptors.HTTPInterceptor):

    def intercept_response(self, context):
        context.should_retry = True
        return context


class RetryUnavailable(interceptors.HTTPInterceptor):

    def intercept_response(self, context):
        if context.response.status_code == 503:
            context.should_retry = True
        return context


class AppendAttempt(interceptors.HTTPInterceptor):

    def intercept_request(self, context):
        trail = context.request.headers.get('X-Trail')
        context.request.headers['X-Trail'] = 'x' if not trail else trail + ',x'
        return context


class RegistrySize(interceptors.HTTPInterceptor):
    """Records how many tasks the session tracks whenever a response arrives."""

    def __init__(self):
        self.session = None
        self.sizes = []

    def intercept_response(self, context):
        self.sizes.append(len(self.session._tasks))
        return context


class CancelThenRetry(interceptors.HTTPInterceptor):
    """Cancels `task` while asking for its response to be retried."""

    def __init__(self):
        self.task = None

    def intercept_response(self, context):
        self.task.cancel()
        context.should_retry = True
        return context


class CancellingDelegate(RecordingDelegate):
    """Cancels `task` once the first chunk of the body arrived."""

    task = None

    def received_data(self, data):
        super(CancellingDelegate, self).received_data(data)
        self.task.cancel()


class FailingDelegate(RecordingDelegate):

    def completed(self, error):
        super(FailingDelegate, self).completed(error)
        raise KeyError('completed')


class SessionTestCase(unittest.TestCase):

    def make_session(self, adapter, interceptors=(), **kwargs):
        s = session.InterceptableSession(base_url=BASE_URL, interceptors=interceptors, **kwargs)
        s.base_session.mount(BASE_URL, adapter)
        self.addCleanup(s.close)
        return s

    def run_task(self, s, request=None):
        delegate = RecordingDelegate()
        task = s.data_task(request or requests.Request('GET', 'db/doc'), delegate)
        task.resume()
        self.assertTrue(delegate.done.wait(TIMEOUT))
        return task, delegate


class TestExchange(SessionTestCase):

    def test_response_body_and_completion(self):
        adapter = ScriptedAdapter(lambda request: (200, b'{"_id": "doc"}'))
        s = self.make_session(adapter)
        task, delegate = self.run_task(s)
        self.assertEqual(len(delegate.responses), 1)
        self.assertEqual(delegate.responses[0].status_code, 200)
        self.assertEqual(b''.join(delegate.chunks), b'{"_id": "doc"}')
        self.assertEqual(delegate.errors, [None])
        self.assertEqual(task.state, session.TaskState.COMPLETED)
        self.assertEqual(adapter.requests[0].url, BASE_URL + 'db/doc')

    def test_body_delivered_in_chunks(self):
        adapter = ScriptedAdapter(lambda request: (200, b'0123456789'))
        s = self.make_session(adapter, chunk_size=4)
        _, delegate = self.run_task(s)
        self.assertEqual(delegate.chunks, [b'0123', b'4567', b'89'])

    def test_task_starts_suspended(self):
        adapter = ScriptedAdapter(lambda request: (200, b'{}'))
        s = self.make_session(adapter)
        delegate = RecordingDelegate()
        task = s.data_task(requests.Request('GET', 'db/doc'), delegate)
        self.assertEqual(task.state, session.TaskState.SUSPENDED)
        self.assertEqual(adapter.requests, [])
        task.resume()
        self.assertTrue(delegate.done.wait(TIMEOUT))
        self.assertEqual(len(adapter.requests), 1)

    def test_request_interceptor_changes_request(self):
        adapter = ScriptedAdapter(lambda request: (200, b'{}'))
        s = self.make_session(adapter, interceptors=[AppendAttempt()])
        original = requests.Request('GET', 'db/doc')
        task, _ = self.run_task(s, original)
        self.assertEqual(adapter.requests[0].headers['X-Trail'], 'x')
        self.assertNotIn('X-Trail', original.headers)
        self.assertIs(task.request, original)

    def test_user_agent(self):
        adapter = ScriptedAdapter(lambda request: (200, b'{}'))
        s = self.make_session(adapter)
        self.run_task(s)
        agent = adapter.requests[0].headers['User-Agent']
        self.assertTrue(agent.startswith('CouchClient/'))
        self.assertEqual(agent, session.user_agent())
        self.assertEqual(len(agent.split('/')), 4)
        self.assertFalse(agent.endswith(')'))

    def test_registry_emptied_on_completion(self):
        adapter = ScriptedAdapter(lambda request: (200, b'{}'))
        s = self.make_session(adapter)
        self.run_task(s)
        self.assertEqual(s._tasks, {})


class TestRetry(SessionTestCase):

    def test_retries_are_bounded(self):
        adapter = SequenceAdapter((503, b'{"error": "unavailable"}'))
        s = self.make_session(adapter, interceptors=[AlwaysRetry()])
        task, delegate = self.run_task(s)
        self.assertEqual(len(adapter.requests), session.MAX_RETRIES + 1)
        self.assertEqual(task.remaining_retries, 0)
        self.assertEqual(len(delegate.responses), 1)
        self.assertEqual(delegate.responses[0].status_code, 503)
        self.assertEqual(b''.join(delegate.chunks), b'{"error": "unavailable"}')
        self.assertEqual(delegate.errors, [None])
        self.assertEqual(s._tasks, {})

    def test_retry_until_success(self):
        adapter = SequenceAdapter((503, b'busy'), (503, b'busy'), (200, b'{"ok": true}'))
        s = self.make_session(adapter, interceptors=[RetryUnavailable()])
        task, delegate = self.run_task(s)
        self.assertEqual(len(adapter.requests), 3)
        self.assertEqual(task.remaining_retries, session.MAX_RETRIES - 2)
        self.assertEqual([r.status_code for r in delegate.responses], [200])
        self.assertEqual(b''.join(delegate.chunks), b'{"ok": true}')
        self.assertEqual(delegate.errors, [None])

    def test_retry_starts_from_original_request(self):
        adapter = SequenceAdapter((503, b''), (503, b''), (200, b'{}'))
        s = self.make_session(adapter, interceptors=[AppendAttempt(), RetryUnavailable()])
        self.run_task(s)
        self.assertEqual([r.headers['X-Trail'] for r in adapter.requests], ['x', 'x', 'x'])

    def test_one_registry_entry_per_task(self):
        adapter = SequenceAdapter((503, b''))
        sizes = RegistrySize()
        s = self.make_session(adapter, interceptors=[sizes, AlwaysRetry()])
        sizes.session = s
        task, _ = self.run_task(s)
        self.assertEqual(len(sizes.sizes), session.MAX_RETRIES + 1)
        self.assertEqual(set(sizes.sizes), {1})

    def test_logical_task_survives_swap(self):
        adapter = SequenceAdapter((503, b''), (200, b'{}'))
        s = self.make_session(adapter, interceptors=[RetryUnavailable()])
        delegate = RecordingDelegate()
        task = s.data_task(requests.Request('GET', 'db/doc'), delegate)
        first = task.in_progress_task
        task.resume()
        self.assertTrue(delegate.done.wait(TIMEOUT))
        self.assertIsNot(task.in_progress_task, first)
        self.assertEqual(task.state, session.TaskState.COMPLETED)


class TestFailures(SessionTestCase):

    def test_connection_error(self):
        cause = requests.exceptions.ConnectionError('refused')
        s = self.make_session(SequenceAdapter(cause))
        _, delegate = self.run_task(s)
        error, = delegate.errors
        self.assertIsInstance(error, exceptions.RequestsException)
        self.assertIs(error.__cause__, cause)
        self.assertEqual(delegate.responses, [])

    def test_timeout(self):
        s = self.make_session(SequenceAdapter(requests.exceptions.ReadTimeout('slow')))
        _, delegate = self.run_task(s)
        self.assertIsInstance(delegate.errors[0], exceptions.Timeout)

    def test_network_errors_are_not_retried(self):
        adapter = SequenceAdapter(requests.exceptions.ConnectionError('refused'))
        s = self.make_session(adapter, interceptors=[AlwaysRetry()])
        self.run_task(s)
        self.assertEqual(len(adapter.requests), 1)

    def test_cancel_before_resume(self):
        adapter = ScriptedAdapter(lambda request: (200, b'{}'))
        s = self.make_session(adapter)
        delegate = RecordingDelegate()
        task = s.data_task(requests.Request('GET', 'db/doc'), delegate)
        task.cancel()
        self.assertTrue(delegate.done.wait(TIMEOUT))
        self.assertIsInstance(delegate.errors[0], exceptions.TaskCancelled)
        self.assertEqual(adapter.requests, [])
        self.assertEqual(task.state, session.TaskState.COMPLETED)

    def test_cancel_during_retry(self):
        adapter = SequenceAdapter((503, b''), (200, b'{}'))
        cancel = CancelThenRetry()
        s = self.make_session(adapter, interceptors=[cancel])
        delegate = RecordingDelegate()
        task = s.data_task(requests.Request('GET', 'db/doc'), delegate)
        cancel.task = task
        first = task.in_progress_task
        task.resume()
        self.assertTrue(delegate.done.wait(TIMEOUT))
        self.assertEqual(len(adapter.requests), 1)
        self.assertIs(task.in_progress_task, first)
        self.assertEqual(task.remaining_retries, session.MAX_RETRIES)
        self.assertEqual(delegate.responses, [])
        self.assertEqual(len(delegate.errors), 1)
        self.assertIsInstance(delegate.errors[0], exceptions.TaskCancelled)
        self.assertEqual(s._tasks, {})

    def test_cancel_between_chunks(self):
        adapter = ScriptedAdapter(lambda request: (200, b'0123456789'))
        s = self.make_session(adapter, chunk_size=4)
        delegate = CancellingDelegate()
        task = s.data_task(requests.Request('GET', 'db/doc'), delegate)
        delegate.task = task
        task.resume()
        self.assertTrue(delegate.done.wait(TIMEOUT))
        self.assertEqual(delegate.chunks, [b'0123'])
        self.assertIsInstance(delegate.errors[0], exceptions.TaskCancelled)
        self.assertEqual(task.state, session.TaskState.COMPLETED)

    def test_delegate_error_is_logged(self):
        s = self.make_session(ScriptedAdapter(lambda request: (200, b'{}')), max_workers=1)
        delegate = FailingDelegate()
        with self.assertLogs('couchclient.session', 'ERROR') as logs:
            s.data_task(requests.Request('GET', 'db/doc'), delegate).resume()
            s.close(wait=True)
        self.assertEqual(delegate.errors, [None])
        self.assertIs(logs.records[0].exc_info[0], KeyError)

    def test_unknown_transport_task_ignored(self):
        s = self.make_session(ScriptedAdapter(lambda request: (200, b'{}')))
        stale = session.TransportTask(s, requests.Request('GET', 'db/doc'))
        self.assertIs(s._received_response(stale, None), session.Disposition.CANCEL)
        s._received_data(stale, b'data')
        s._completed(stale, None)
        self.assertEqual(s._tasks, {})


if __name__ == '__main__':
    unittest.main()
