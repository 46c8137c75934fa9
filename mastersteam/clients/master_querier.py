"""
Master Server Directory Client

Enumerates game server addresses from the Steam master server.

Communication Flow:
1. Client sends a page request seeded with 0.0.0.0:0
2. Master replies with up to ~230 addresses
3. Client requests the next page seeded with the last address received
4. Repeat until a page ends with 0.0.0.0:0 or comes back empty

The master throttles clients hard, so there is never more than one request
in flight and a failed page is not retried.
"""

import asyncio
import inspect
import logging
from enum import Enum

from mastersteam.clients.datagram import DatagramQueueProtocol
from mastersteam.errors import DirectoryError, MastersteamError
from mastersteam.models import ServerAddress
from mastersteam.protocol.master_query import (
    MASTER_SERVER,
    SENTINEL,
    DirectoryFilter,
    decode_directory_response,
    encode_directory_request,
)
from mastersteam.utils.fault_policy import DEFAULT_FAULT_POLICY

DEFAULT_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


class MasterQueryState(Enum):
    IDLE = 'idle'
    ENUMERATING = 'enumerating'
    DONE = 'done'


class MasterServerQuerier:
    """
    Paginated master server enumeration.

    Attributes:
        master: Master server address
        timeout: Seconds to wait for each page
        max_pages: Page cap per enumeration, 0 for no cap
        page_delay: Seconds to sleep between page requests
        state: Current MasterQueryState
    """

    def __init__(self, master: ServerAddress = MASTER_SERVER, timeout: float = DEFAULT_TIMEOUT,
                 max_pages: int = 0, page_delay: float = 0.0, policy=None):
        self.master = ServerAddress(*master)
        self.timeout = timeout
        self.max_pages = max_pages
        self.page_delay = page_delay
        self.policy = policy or DEFAULT_FAULT_POLICY
        self.state = MasterQueryState.IDLE
        self.pages = 0

    async def query(self, directory_filter: DirectoryFilter, on_batch) -> int:
        """
        Enumerate every address matching the filter.

        Each page is handed to on_batch as soon as it arrives; the callback
        may be a plain function or a coroutine function. Exceptions raised by
        the callback abort the enumeration and propagate.

        Args:
            directory_filter: Constraints for the master server
            on_batch: Called with a list of ServerAddress per non-empty page

        Returns:
            Number of addresses delivered

        Raises:
            DirectoryError: Master unreachable, silent or answering garbage
        """
        self.state = MasterQueryState.ENUMERATING
        self.pages = 0
        delivered = 0

        logger.info(f"[MASTER] Querying {self.master} with {directory_filter!r}")

        transport, protocol = await self._open_endpoint()
        try:
            cursor = SENTINEL
            addresses = None

            while True:
                if self.max_pages and self.pages >= self.max_pages:
                    logger.warning(
                        f"[MASTER] Stopping after {self.pages} page(s), "
                        f"page cap reached at cursor {cursor}"
                    )
                    break

                if self.pages and self.page_delay:
                    await asyncio.sleep(self.page_delay)

                addresses = await self._fetch_page(
                    transport, protocol, directory_filter, cursor, addresses
                )
                self.pages += 1

                done = not addresses or addresses[-1] == SENTINEL
                batch = [address for address in addresses if address != SENTINEL]

                logger.debug(f"[MASTER] Page {self.pages}: {len(batch)} address(es)")

                if batch:
                    delivered += len(batch)
                    result = on_batch(batch)
                    if inspect.isawaitable(result):
                        await result

                if done:
                    break

                if addresses[-1] == cursor:
                    raise DirectoryError(
                        f"master cursor did not advance past {cursor}", self.master
                    )
                cursor = addresses[-1]

        finally:
            transport.close()
            self.state = MasterQueryState.DONE

        logger.info(f"[MASTER] Enumeration done: {delivered} address(es) in {self.pages} page(s)")
        return delivered

    async def _open_endpoint(self):
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    DatagramQueueProtocol,
                    remote_addr=(self.master.host, self.master.port)
                ),
                self.timeout
            )
        except asyncio.TimeoutError:
            self.state = MasterQueryState.DONE
            raise DirectoryError(f"timed out resolving master {self.master}", self.master) from None
        except OSError as e:
            self.state = MasterQueryState.DONE
            raise DirectoryError(f"master {self.master} unreachable: {e}", self.master) from e

    async def _fetch_page(self, transport, protocol, directory_filter, cursor, previous):
        """
        Request the page after cursor.

        Replies still queued from an earlier request are dropped first, and a
        reply identical to the previous page is a duplicated datagram, not the
        next page.
        """
        request = encode_directory_request(directory_filter, cursor)
        loop = asyncio.get_running_loop()

        while not protocol.datagrams.empty():
            protocol.datagrams.get_nowait()
            logger.debug(f"[MASTER] Discarded stale reply before requesting after {cursor}")

        try:
            transport.sendto(request)
        except OSError as e:
            raise DirectoryError(f"master {self.master} unreachable: {e}", self.master) from e

        deadline = loop.time() + self.timeout
        while True:
            try:
                data, _ = await asyncio.wait_for(protocol.datagrams.get(), deadline - loop.time())
            except asyncio.TimeoutError:
                raise DirectoryError(
                    f"no reply from master {self.master} within {self.timeout:g}s", self.master
                ) from None

            if isinstance(data, Exception):
                raise DirectoryError(f"master {self.master} unreachable: {data}", self.master) from data

            try:
                addresses = self.policy(decode_directory_response, data)
            except MastersteamError as e:
                raise DirectoryError(f"undecodable master reply: {e}", self.master) from e

            if previous and addresses == previous:
                logger.debug(f"[MASTER] Ignoring duplicate of page {self.pages}")
                continue
            return addresses
