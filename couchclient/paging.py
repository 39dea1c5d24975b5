"""Page through the rows of a view.

A `ViewPage` queries a view one page at a time and hands each page to a
page handler, whose return value says what to fetch next:

>>> def handle(page, token, error):
...     if error is not None:
...         return Paging.REPEAT
...     for row in page['rows']:
...         print(row['id'])
...     return Paging.NEXT if len(page['rows']) == 25 else Paging.STOP
>>> pager = ViewPage('by_name', 'people', 'python-tests', client, handle)  #doctest: +SKIP
>>> pager.make_request()                                                   #doctest: +SKIP
>>> pager.wait()                                                           #doctest: +SKIP
True

Every request asks for one row more than the page size.  When that extra row
comes back it is not delivered; it marks where the next page starts.

Only one request of a paging session is in flight at a time: the next one is
made after the page handler for the current page has returned.
"""

import collections
import enum
import functools
import json
import logging
import threading

from couchclient import exceptions
from couchclient.operations import QueryViewOperation, Stale

__all__ = ['Paging', 'PageToken', 'ViewPage']

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25

_QUERY_OPTIONS = (
    'descending',
    'start_key',
    'start_key_document_id',
    'end_key',
    'end_key_document_id',
    'inclusive_end',
    'key',
    'keys',
    'include_docs',
    'conflicts',
    'stale',
    'include_last_update_sequence_number',
)

_NOTHING = object()


class Paging(enum.Enum):
    """What a page handler wants to happen after it has seen a page."""
    NEXT = 'next'
    PREVIOUS = 'previous'
    REPEAT = 'repeat'
    STOP = 'stop'


class _State(object):
    """Where the current page sits in the view.

    ``last_end_key`` and ``last_end_key_doc_id`` belong to the first row after
    the current page, ``page_start_key`` and ``page_start_doc_id`` to its first
    row.  Keys are `_NOTHING` until a row was seen, as `None` is the key of
    rows emitted with a ``null`` key.
    """

    _keys = ('last_end_key', 'page_start_key')
    _doc_ids = ('last_end_key_doc_id', 'page_start_doc_id')

    def __init__(self, last_end_key=_NOTHING, last_end_key_doc_id=None,
                 page_start_key=_NOTHING, page_start_doc_id=None):
        self.last_end_key = last_end_key
        self.last_end_key_doc_id = last_end_key_doc_id
        self.page_start_key = page_start_key
        self.page_start_doc_id = page_start_doc_id

    @property
    def has_boundary(self):
        return self.last_end_key is not _NOTHING and self.page_start_key is not _NOTHING

    def json(self):
        data = {name: getattr(self, name) for name in self._doc_ids}
        data.update((name, getattr(self, name)) for name in self._keys
                    if getattr(self, name) is not _NOTHING)
        return data

    @classmethod
    def from_json(cls, data):
        kwargs = {name: data.get(name) for name in cls._doc_ids}
        kwargs.update((name, data[name]) for name in cls._keys if name in data)
        return cls(**kwargs)


_Request = collections.namedtuple('_Request', ['direction', 'params', 'anchor'])


def _start_at(params, key, doc_id):
    params['start_key'] = key
    if doc_id is None:
        params.pop('start_key_document_id', None)
    else:
        params['start_key_document_id'] = doc_id


class PageToken(object):
    """The position of a paging session, which can be resumed from it later.

    A token holds the view query and the boundaries of the page it was handed
    out with.  `serialize` turns it into a string for storage; pass the token,
    or that string, to `ViewPage.next_page` or `ViewPage.previous_page`.
    """

    def __init__(self, view_query_params, state):
        self.view_query_params = dict(view_query_params)
        self.state = dict(state)

    def __eq__(self, other):
        return (isinstance(other, PageToken) and
                self.view_query_params == other.view_query_params and
                self.state == other.state)

    def __ne__(self, other):
        return not self == other

    def __repr__(self):
        return '<%s %r>' % (type(self).__name__, self.state)

    def serialize(self):
        return json.dumps({'params': self.view_query_params, 'state': self.state}, sort_keys=True)

    @classmethod
    def deserialize(cls, text):
        data = json.loads(text)
        return cls(data['params'], data['state'])


class ViewPage(object):
    """Pages through a view, `page_size` rows at a time.

    :param name: the name of the view
    :param design_document_id: the design document holding the view, without
                               the ``_design/`` prefix
    :param database_name: the database to query
    :param client: the `CouchDBClient` requests are added to
    :param page_handler: called as ``page_handler(page, token, error)`` for
                         every page; `page` is the view response with only
                         the rows of the page, `token` a `PageToken`.  If the
                         request failed, `page` and `token` are `None` and
                         `error` is set.  Returns a `Paging` value.
    :param page_size: the number of rows in a page
    :param row_handler: called with each row of a page, before the page
                        handler is called for it

    The remaining keyword arguments are passed on to `QueryViewOperation`.
    Reduce functions are never applied; paging only makes sense over rows.
    """

    def __init__(self, name, design_document_id, database_name, client, page_handler,
                 page_size=DEFAULT_PAGE_SIZE,
                 descending=None,
                 start_key=None,
                 start_key_document_id=None,
                 end_key=None,
                 end_key_document_id=None,
                 inclusive_end=None,
                 key=None,
                 keys=None,
                 include_docs=None,
                 conflicts=None,
                 stale=None,
                 include_last_update_sequence_number=None,
                 row_handler=None):
        if page_size < 1:
            raise ValueError('page_size must be 1 or more')
        self.name = name
        self.design_document_id = design_document_id
        self.database_name = database_name
        self.page_size = page_size
        self._client = client
        self._page_handler = page_handler
        self._row_handler = row_handler
        self._options = {
            'descending': descending,
            'start_key': start_key,
            'start_key_document_id': start_key_document_id,
            'end_key': end_key,
            'end_key_document_id': end_key_document_id,
            'inclusive_end': inclusive_end,
            'key': key,
            'keys': keys,
            'include_docs': include_docs,
            'conflicts': conflicts,
            'stale': Stale(stale).value if stale is not None else None,
            'include_last_update_sequence_number': include_last_update_sequence_number,
        }

        self._state = _State()
        self._last_request = None
        self._lock = threading.Lock()
        self._submitting = False
        self._pending = _NOTHING
        self._active = False
        self._error = None
        self._done = threading.Event()

    def __repr__(self):
        return '<%s %s/_design/%s/_view/%s>' % (type(self).__name__, self.database_name,
                                                self.design_document_id, self.name)

    @property
    def view_query_params(self):
        """The query this instance pages through, as accepted by the constructor."""
        params = {
            'name': self.name,
            'design_document_id': self.design_document_id,
            'database_name': self.database_name,
            'page_size': self.page_size,
        }
        params.update((name, self._options[name]) for name in _QUERY_OPTIONS)
        return params

    @property
    def active(self):
        return self._active

    def token(self):
        """A `PageToken` for the page last delivered."""
        return PageToken(self.view_query_params, self._state.json())

    def make_request(self):
        """Start paging from the first page."""
        self._start(None, _State())

    def wait(self, timeout=None):
        """Block until the paging session has stopped.

        :return: `True` if it stopped, `False` on timeout
        :raise UnsupportedPagingOption: if a page handler returned a directive
                                        that could not be followed
        """
        if not self._done.wait(timeout):
            return False
        if self._error is not None:
            raise self._error
        return True

    @classmethod
    def from_token(cls, token, client, page_handler, row_handler=None):
        """Create an instance positioned on the page `token` was handed out with."""
        if not isinstance(token, PageToken):
            token = PageToken.deserialize(token)
        page = cls(client=client, page_handler=page_handler, row_handler=row_handler,
                   **token.view_query_params)
        page._state = _State.from_json(token.state)
        return page

    @classmethod
    def next_page(cls, token, client, page_handler, row_handler=None):
        """Resume paging with the page after the one `token` was handed out with."""
        page = cls.from_token(token, client, page_handler, row_handler)
        page._start(Paging.NEXT)
        return page

    @classmethod
    def previous_page(cls, token, client, page_handler, row_handler=None):
        """Resume paging with the page before the one `token` was handed out with."""
        page = cls.from_token(token, client, page_handler, row_handler)
        page._start(Paging.PREVIOUS)
        return page

    def _start(self, directive, state=None):
        if self._active:
            raise RuntimeError('paging session already in progress')
        if state is not None:
            self._state = state
        self._check_directive(directive)
        self._active = True
        self._error = None
        self._done.clear()
        try:
            self._run(directive)
        except Exception as exc:
            self._finish(exc)
            raise

    def _finish(self, error=None):
        self._error = error
        self._active = False
        self._done.set()

    def _check_directive(self, directive):
        if directive is Paging.PREVIOUS and not self._state.has_boundary:
            raise exceptions.UnsupportedPagingOption(
                'Cannot page backwards before a page boundary has been seen')

    def _derive(self, direction):
        """Build the request for the page in `direction`, `None` being the first page."""
        params = {name: value for name, value in self._options.items() if value is not None}
        skip = 0
        anchor = None
        if direction is Paging.NEXT and self._state.has_boundary:
            _start_at(params, self._state.last_end_key, self._state.last_end_key_doc_id)
        elif direction is Paging.PREVIOUS:
            # Walk backwards from the first row of the current page, leaving that row out.
            anchor = (self._state.page_start_key, self._state.page_start_doc_id)
            _start_at(params, *anchor)
            params.pop('end_key', None)
            params.pop('end_key_document_id', None)
            params.update(descending=not self._options['descending'], inclusive_end=True)
            skip = 1
        params.update(limit=self.page_size + 1, skip=skip, reduce=False)
        return _Request(direction, params, anchor)

    def _run(self, directive):
        """Request pages until one is in flight or the session stops.

        A completion handler that runs before `add` returns leaves its
        directive in ``_pending`` instead of calling back in here, so the
        stack does not grow with the number of pages.
        """
        while directive is not Paging.STOP:
            if directive is Paging.REPEAT:
                request = self._last_request
            else:
                request = self._derive(directive)
            self._last_request = request
            log.debug("Requesting %s page of %r with %r", (directive or 'first'), self,
                      request.params)
            operation = QueryViewOperation(
                self.name, self.design_document_id, self.database_name,
                completion_handler=functools.partial(self._received, request),
                **request.params)

            with self._lock:
                self._submitting = True
                self._pending = _NOTHING
            try:
                self._client.add(operation)
            finally:
                with self._lock:
                    self._submitting = False
                    directive, self._pending = self._pending, _NOTHING
            if directive is _NOTHING:
                return
        self._finish()

    def _received(self, request, response, http_info, error):
        try:
            directive = self._deliver(request, response, error)
            with self._lock:
                if self._submitting:
                    self._pending = directive
                    return
            self._run(directive)
        except exceptions.UnsupportedPagingOption as exc:
            log.error("Stopped paging %r: %s", self, exc)
            self._finish(exc)
        except Exception as exc:
            log.exception("Stopped paging %r", self)
            self._finish(exc)

    def _deliver(self, request, response, error):
        """Hand the response to the handlers and return the next directive."""
        rows = response.get('rows') if isinstance(response, dict) else None
        if error is not None or not isinstance(rows, list):
            if error is None:
                error = exceptions.CouchDBException("View response contains no rows")
            directive = Paging(self._page_handler(None, None, error))
            if directive not in (Paging.REPEAT, Paging.STOP):
                raise exceptions.UnsupportedPagingOption(
                    'Only repeat or stop can follow a failed request, got {}'.format(directive.value))
            return directive

        rows = list(rows)
        sentinel = None
        if len(rows) > self.page_size:
            sentinel = rows.pop()

        if request.direction is Paging.PREVIOUS:
            # The page we came from follows this one.
            rows.reverse()
            self._state.last_end_key, self._state.last_end_key_doc_id = request.anchor
        elif sentinel is not None:
            self._state.last_end_key = sentinel.get('key')
            self._state.last_end_key_doc_id = sentinel.get('id')
        if rows:
            self._state.page_start_key = rows[0].get('key')
            self._state.page_start_doc_id = rows[0].get('id')

        if self._row_handler is not None:
            for row in rows:
                self._row_handler(row)

        page = dict(response)
        page['rows'] = rows
        directive = Paging(self._page_handler(page, self.token(), None))
        self._check_directive(directive)
        return directive
