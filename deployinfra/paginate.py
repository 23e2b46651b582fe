"""Background page-by-page listing of remote collections.

A listing runs on its own thread and hands pages to the caller one at a
time through a PageStream. The caller reads pages while later ones are
still being fetched, and can cancel the listing at any point:

    pages, cancel = paginator.start(PageRequest(max_pages=3), lister)
    for page in pages:
        if page.error:
            raise page.error
        for item in page.items:
            ...

Only one page is ever being fetched per stream, and the thread waits a
throttle interval between fetches so remote rate limits are respected.
"""

import logging
import queue
import threading
from typing import Callable, NamedTuple, Protocol

logger = logging.getLogger("deployinfra")

DEFAULT_RESULTS_PER_PAGE = 40
THROTTLE_SECONDS = 0.35

_CLOSED = object()


class PageRequest(NamedTuple):
    """What to list and how aggressively.

    :param order_by: Lister-specific ordering, e.g. 'LaunchTime desc'
    :param filter: Lister-specific filter expression
    :param max_pages: Stop after this many pages (0 = unbounded)
    :param results_per_page: Page size requested from the remote API (0 = 40)
    """

    order_by: str | None = None
    filter: str | None = None
    max_pages: int = 0
    results_per_page: int = 0


class Page(NamedTuple):
    """One fetched batch; error is set only on the last page of a failed listing."""

    page_number: int
    items: list
    error: Exception | None = None


class Lister(Protocol):
    """Fetches a single page of one kind of remote resource."""

    def fetch_page(
        self,
        token: str,
        page_size: int,
        filter: str | None,
        order_by: str | None,
    ) -> tuple[list, str]:
        """:return: (items, next_token); an empty next_token means no more pages"""
        ...


class CancelToken:
    """One-shot cancellation signal shared by a caller and a listing thread."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()

    def trigger(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
        logger.debug("Listing cancel requested")

    def is_triggered(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Block for up to timeout seconds.

        :return: True if the token was triggered before the timeout
        """
        return self._event.wait(timeout)


class PageStream:
    """Read side of a listing: iterate to receive pages in order.

    The stream ends after the last page has been delivered, whether the
    listing finished, failed, hit max_pages or was cancelled. Used as a
    context manager, leaving the block cancels the listing and waits for
    its thread to exit.
    """

    def __init__(self, cancel_token: CancelToken) -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=1)
        self._cancel_token = cancel_token
        self._closed = False
        self._thread: threading.Thread | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _send(self, page: Page) -> None:
        # Returns only once the reader has taken the page.
        self._queue.put(page)
        self._queue.join()

    def _close(self) -> None:
        self._queue.put(_CLOSED)

    def __iter__(self):
        return self

    def __next__(self) -> Page:
        if self._closed:
            raise StopIteration
        item = self._queue.get()
        self._queue.task_done()
        if item is _CLOSED:
            self._closed = True
            raise StopIteration
        return item

    def close(self) -> None:
        """Cancel the listing, discard undelivered pages and join the thread."""
        self._cancel_token.trigger()
        for _ in self:
            pass
        if self._thread is not None:
            self._thread.join()

    def __enter__(self) -> "PageStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class PagesResponse(NamedTuple):
    pages: PageStream
    cancel: Callable[[], None]


class Paginator:
    """Runs listings on background threads, one thread per stream.

    :param throttle: Seconds to wait between page fetches
    """

    def __init__(self, throttle: float = THROTTLE_SECONDS) -> None:
        self.throttle = throttle

    def start(self, request: PageRequest, lister: Lister) -> PagesResponse:
        """Start listing in the background and return immediately.

        The request is assumed to be valid; resource-specific validation
        happens before this is called.

        :param request: Page size, page bound, filter and ordering
        :param lister: Fetches one page at a time
        :return: (pages, cancel); cancel is idempotent and safe from any thread
        """
        cancel_token = CancelToken()
        stream = PageStream(cancel_token)
        thread = threading.Thread(
            target=self._run,
            args=(request, lister, stream, cancel_token),
            name=f"deployinfra-{type(lister).__name__}",
            daemon=True,
        )
        stream._thread = thread
        thread.start()
        return PagesResponse(stream, cancel_token.trigger)

    def _run(
        self,
        request: PageRequest,
        lister: Lister,
        stream: PageStream,
        cancel_token: CancelToken,
    ) -> None:
        page_size = (
            request.results_per_page
            if request.results_per_page > 0
            else DEFAULT_RESULTS_PER_PAGE
        )
        max_pages = request.max_pages
        lister_name = type(lister).__name__

        page_token = ""
        page_number = 0
        try:
            while True:
                try:
                    items, next_token = lister.fetch_page(
                        page_token, page_size, request.filter, request.order_by
                    )
                    items = list(items)
                except Exception as e:
                    logger.debug(f"{lister_name}: page {page_number} failed: {e}")
                    stream._send(Page(page_number, [], e))
                    return

                logger.debug(f"{lister_name}: page {page_number} ({len(items)} items)")
                stream._send(Page(page_number, items))

                page_number += 1
                if max_pages > 0 and page_number >= max_pages:
                    return

                page_token = next_token or ""

                if cancel_token.wait(self.throttle):
                    logger.debug(f"{lister_name}: cancelled after {page_number} pages")
                    return

                if not page_token:
                    return
        finally:
            stream._close()
