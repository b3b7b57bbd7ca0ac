"""
Time window pagination over datastream endpoints.

AppEngine has no server side cursors: every page is an independent query on
a time window, and the paginator narrows the window after each full page
using the timestamp of the last sample it received.
"""

import logging
from collections import Counter
from typing import Any, Callable, Dict, Iterator, List, Union

import pandas as pd

from interfaces import format_rfc3339

from .exceptions import DecodeError, NoMorePagesError
from .models import AggregateSample, Cursor, Order, Sample
from .normalizer import build_aggregate, parse_sample


logger = logging.getLogger(__name__)

Record = Union[Sample, AggregateSample]
PageParser = Callable[[Any, str], Record]


class DatastreamPaginator:
    """
    Iterates over the samples of one datastream path, one page at a time.

    A paginator owns its cursor and is not meant to be shared between
    callers. It only moves when get_next_page or rewind are called.
    """

    def __init__(
        self,
        client,
        url_path: str,
        cursor: Cursor,
        record_parser: PageParser = parse_sample,
        data_path: str = ""
    ):
        """
        Initialize paginator.

        Args:
            client: Object exposing get_json(path, params), usually an AppEngineClient
            url_path: Relative URL of the datastream path
            cursor: Window, order and page size to iterate with
            record_parser: Decodes one record of a page
            data_path: Interface path of the records, used in error messages
        """
        self.client = client
        self.url_path = url_path
        self.cursor = cursor
        self.record_parser = record_parser
        self.data_path = data_path

        # How many samples of each identity were returned at the current descending boundary
        self._boundary_returned: Counter = Counter()

    @classmethod
    def for_aggregates(cls, client, url_path: str, cursor: Cursor, data_path: str = "") -> 'DatastreamPaginator':
        """Paginator whose pages hold AggregateSamples."""
        return cls(client, url_path, cursor, record_parser=build_aggregate, data_path=data_path)

    @property
    def page_size(self) -> int:
        return self.cursor.page_size

    @property
    def order(self) -> Order:
        return self.cursor.order

    def rewind(self) -> None:
        """Go back to the first page; the window itself is unchanged."""
        self.cursor.next_window_boundary = None
        self.cursor.exhausted = False
        self._boundary_returned = Counter()

    def has_next_page(self) -> bool:
        return not self.cursor.exhausted

    def build_query(self) -> Dict[str, Any]:
        """Query parameters of the next page request."""
        cursor = self.cursor
        params: Dict[str, Any] = {}

        if cursor.order == Order.ASCENDING:
            params['page_size'] = cursor.page_size
            params['to'] = format_rfc3339(cursor.window_end)
            if cursor.next_window_boundary is not None:
                params['since_after'] = format_rfc3339(cursor.next_window_boundary)
            elif cursor.window_start is not None:
                params['since'] = format_rfc3339(cursor.window_start)
        else:
            params['limit'] = cursor.page_size
            if cursor.window_start is not None:
                params['since'] = format_rfc3339(cursor.window_start)
            upper_bound = cursor.next_window_boundary or cursor.window_end
            params['to'] = format_rfc3339(upper_bound)

        return params

    def get_next_page(self) -> List[Record]:
        """
        Fetch the next page.

        The cursor is only updated once the page has been fetched and
        decoded, so a failed call can simply be retried.

        Returns:
            Samples of the page, in the paginator order

        Raises:
            NoMorePagesError: If the paginator is exhausted
            TransportError: If the request fails
            DecodeError: If the response is not a list of records
        """
        if self.cursor.exhausted:
            raise NoMorePagesError("No more pages available")

        raw_page = self.client.get_json(self.url_path, params=self.build_query())
        if not isinstance(raw_page, list):
            raise DecodeError(f"Expected a list of samples from {self.url_path}, got {type(raw_page).__name__}")

        page = [self.record_parser(record, self.data_path) for record in raw_page]
        logger.debug("Fetched %d samples from %s", len(page), self.url_path)

        if len(page) < self.cursor.page_size:
            self.cursor.exhausted = True
        else:
            self._advance(page[-1].timestamp)

        if self.cursor.order == Order.DESCENDING:
            page = self._drop_boundary_duplicates(page)

        return page

    def _advance(self, boundary: pd.Timestamp) -> None:
        previous = self.cursor.next_window_boundary
        if previous is not None:
            if self.cursor.order == Order.ASCENDING:
                if boundary <= previous:
                    logger.warning(
                        "Window on %s did not narrow past %s, stopping pagination",
                        self.url_path, format_rfc3339(previous)
                    )
                    self.cursor.exhausted = True
                    return
            elif boundary >= previous:
                # A whole page sits on one instant: step just below it
                logger.warning(
                    "More than %d samples at %s on %s, skipping the ones past the page size",
                    self.cursor.page_size, format_rfc3339(previous), self.url_path
                )
                boundary = previous - pd.Timedelta(nanoseconds=1)
        self.cursor.next_window_boundary = boundary

    @staticmethod
    def _identity(record: Record) -> tuple:
        return (record.timestamp, record.reception_timestamp)

    def _drop_boundary_duplicates(self, page: List[Record]) -> List[Record]:
        """
        Remove samples already returned at the previous boundary.

        Descending continuations use the oldest timestamp seen as an
        inclusive upper bound, so the samples sitting exactly on it come back
        at the head of the next page. Only as many samples as were returned
        are dropped, so distinct samples sharing both timestamps survive.
        """
        pending = self._boundary_returned

        start = 0
        while start < len(page) and pending[self._identity(page[start])] > 0:
            pending[self._identity(page[start])] -= 1
            start += 1
        if start:
            logger.debug("Dropped %d boundary duplicates from %s", start, self.url_path)
            page = page[start:]

        boundary = self.cursor.next_window_boundary
        self._boundary_returned = Counter(self._identity(r) for r in page if r.timestamp == boundary)

        return page

    def __iter__(self) -> Iterator[List[Record]]:
        while self.has_next_page():
            yield self.get_next_page()


def fetch_bounded(paginator: DatastreamPaginator, limit: int) -> List[Record]:
    """
    Collect samples from a paginator, stopping at limit.

    Args:
        paginator: Paginator to drain
        limit: Maximum number of samples, or <= 0 for all of them

    Returns:
        At most limit samples in fetch order; fewer if the paginator runs dry
    """
    results: List[Record] = []

    while paginator.has_next_page():
        page = paginator.get_next_page()

        if limit > 0:
            total = len(results) + len(page)
            if total == limit:
                return results + page
            if total > limit:
                return results + page[:limit - len(results)]

        results.extend(page)

    return results
