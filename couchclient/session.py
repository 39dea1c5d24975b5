"""An HTTP session whose requests can be intercepted and transparently retried.

Requests are turned into `SessionTask` objects by `InterceptableSession.data_task`.
A session task is what callers hold on to; underneath it a `TransportTask`
performs the actual HTTP exchange on one of the session's worker threads.
When a response interceptor asks for a retry, the session replaces the
transport task with a fresh one while the session task, and its retry budget,
stay the same.
"""

import concurrent.futures
import enum
import logging
import platform
import threading

import requests.exceptions
from requests_toolbelt import sessions

import couchclient
from couchclient import exceptions
from couchclient.interceptors import (HTTPInterceptorContext, apply_request_phase,
                                      apply_response_phase, copy_request)

__all__ = ['InterceptableSession', 'SessionTask', 'TransportTask', 'TaskState',
           'Disposition', 'user_agent']

log = logging.getLogger(__name__)

MAX_RETRIES = 10
DEFAULT_MAX_WORKERS = 4
DEFAULT_CHUNK_SIZE = 8192


def user_agent():
    """The User-Agent header sent with every request."""
    return '/'.join([
        'CouchClient',
        couchclient.__version__,
        platform.system() or 'Unknown',
        platform.release() or 'Unknown',
    ])


def _log_failure(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        log.error("Unhandled error in worker: %s", exc, exc_info=exc)


class TaskState(enum.Enum):
    RUNNING = 'running'
    SUSPENDED = 'suspended'
    CANCELING = 'canceling'
    COMPLETED = 'completed'


class Disposition(enum.Enum):
    """What a transport task should do with a response once its headers arrived."""
    ALLOW = 'allow'
    CANCEL = 'cancel'


class TransportTask(object):
    """A single HTTP exchange, run on a worker thread of the owning session.

    The task is created suspended and only starts sending once `resume` is
    called.  Progress is reported back to the session which routes it to the
    delegate of the `SessionTask` the transport task currently belongs to.
    """

    def __init__(self, session, request):
        self._session = session
        self._lock = threading.Lock()
        self._state = TaskState.SUSPENDED
        self.request = request

    def __repr__(self):
        return '<%s %s %s %s>' % (type(self).__name__, self.request.method,
                                  self.request.url, self._state.value)

    @property
    def state(self):
        return self._state

    def resume(self):
        with self._lock:
            if self._state is not TaskState.SUSPENDED:
                return
            self._state = TaskState.RUNNING
        self._session._submit(self._run)

    def cancel(self):
        with self._lock:
            if self._state not in (TaskState.SUSPENDED, TaskState.RUNNING):
                return
            suspended = self._state is TaskState.SUSPENDED
            self._state = TaskState.CANCELING
        if suspended:
            # Nothing is running the task yet, run it so completion is still reported.
            self._session._submit(self._run)

    def _check_cancelled(self):
        if self._state is TaskState.CANCELING:
            raise exceptions.TaskCancelled("Request was cancelled")

    def _run(self):
        response = None
        error = None
        try:
            self._check_cancelled()
            response = self._session._send(self.request)
            if self._session._received_response(self, response) is Disposition.CANCEL:
                with self._lock:
                    self._state = TaskState.CANCELING
            self._check_cancelled()
            for chunk in response.iter_content(self._session.chunk_size):
                self._check_cancelled()
                if chunk:
                    self._session._received_data(self, chunk)
            self._check_cancelled()
        except exceptions.TaskCancelled as exc:
            error = exc
        except requests.exceptions.Timeout as exc:
            error = exceptions.Timeout(str(exc))
            error.__cause__ = exc
        except requests.exceptions.RequestException as exc:
            error = exceptions.RequestsException(str(exc))
            error.__cause__ = exc
        except Exception as exc:
            log.exception("Unexpected error while handling %r", self)
            error = exc
        finally:
            if response is not None:
                response.close()
            with self._lock:
                self._state = TaskState.COMPLETED
        self._session._completed(self, error)


class SessionTask(object):
    """A request made through an `InterceptableSession`.

    The request may be sent several times if interceptors ask for it to be
    retried; `in_progress_task` is the `TransportTask` making the current
    attempt.  Tasks start suspended, call `resume` to start them.
    """

    def __init__(self, request, in_progress_task, delegate, retries=MAX_RETRIES):
        self.request = request
        self.in_progress_task = in_progress_task
        self.delegate = delegate
        self.remaining_retries = retries
        self.cancelled = False

    def __repr__(self):
        return '<%s %s %s>' % (type(self).__name__, self.request.method, self.request.url)

    @property
    def state(self):
        return self.in_progress_task.state

    def resume(self):
        """Resumes a suspended task."""
        self.in_progress_task.resume()

    def cancel(self):
        """Cancels the attempt that is currently in progress."""
        self.cancelled = True
        self.in_progress_task.cancel()


class InterceptableSession(object):
    """Wrapper around BaseUrlSession that runs requests through interceptors and
    retries them when a response interceptor asks for it.

    A delegate passed to `data_task` receives, from a worker thread:

    - ``received_response(response)`` once the final response's headers are in
    - ``received_data(data)`` for each chunk of its body
    - ``completed(error)`` when the exchange is over, `error` being `None` on
      success
    """

    def __init__(self, base_url=None, interceptors=None, max_workers=DEFAULT_MAX_WORKERS,
                 timeout=None, chunk_size=DEFAULT_CHUNK_SIZE):
        self._base_session = sessions.BaseUrlSession(base_url=base_url)
        self._base_session.headers['User-Agent'] = user_agent()
        self._interceptors = list(interceptors or [])
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix='couchclient')
        self._lock = threading.Lock()
        self._tasks = {}
        self.timeout = timeout
        self.chunk_size = chunk_size

    @property
    def base_url(self):
        return self._base_session.base_url

    @base_url.setter
    def base_url(self, url):
        self._base_session.base_url = url

    @property
    def base_session(self):
        """The underlying `requests` session."""
        return self._base_session

    @property
    def interceptors(self):
        return tuple(self._interceptors)

    def data_task(self, request, delegate):
        """Create a suspended task making `request`.

        :param request: a `requests.Request`, its URL relative to the base URL
        :param delegate: receives the response, see the class documentation
        :rtype: `SessionTask`
        """
        ctx = apply_request_phase(self._interceptors, HTTPInterceptorContext(copy_request(request)))
        transport = TransportTask(self, ctx.request)
        task = SessionTask(request, transport, delegate)
        with self._lock:
            self._tasks[transport] = task
        log.debug("Created %r", task)
        return task

    def close(self, wait=False):
        self._executor.shutdown(wait=wait)
        self._base_session.close()

    def _submit(self, fn):
        self._executor.submit(fn).add_done_callback(_log_failure)

    def _send(self, request):
        request.url = self._base_session.create_url(request.url)
        prepared = self._base_session.prepare_request(request)
        settings = self._base_session.merge_environment_settings(prepared.url, {}, True, None, None)
        return self._base_session.send(prepared, timeout=self.timeout, **settings)

    def _lookup(self, transport):
        with self._lock:
            return self._tasks.get(transport)

    def _received_response(self, transport, response):
        task = self._lookup(transport)
        if task is None or task.cancelled:
            return Disposition.CANCEL

        ctx = HTTPInterceptorContext(copy_request(task.request), response)
        ctx = apply_response_phase(self._interceptors, ctx)
        if ctx.should_retry and task.remaining_retries > 0:
            replacement = self._replace(task, transport)
            if replacement is not None:
                replacement.resume()
            return Disposition.CANCEL
        if ctx.should_retry:
            log.warning("Retry requested for %r but no retries remain, delivering response %s",
                        task, response.status_code)
        if task.cancelled:
            return Disposition.CANCEL

        task.delegate.received_response(response)
        return Disposition.ALLOW

    def _replace(self, task, transport):
        """Swap a new transport task, made from the original request, into `task`."""
        ctx = apply_request_phase(self._interceptors, HTTPInterceptorContext(copy_request(task.request)))
        replacement = TransportTask(self, ctx.request)
        with self._lock:
            if task.cancelled or self._tasks.get(transport) is not task:
                return None
            task.remaining_retries -= 1
            del self._tasks[transport]
            self._tasks[replacement] = task
            task.in_progress_task = replacement
        log.debug("Retrying %r, %d retries remaining", task, task.remaining_retries)
        return replacement

    def _received_data(self, transport, data):
        task = self._lookup(transport)
        if task is None:
            return
        task.delegate.received_data(data)

    def _completed(self, transport, error):
        with self._lock:
            task = self._tasks.pop(transport, None)
        if task is None:
            return
        task.delegate.completed(error)
