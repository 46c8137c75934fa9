"""
UDP protocol handler shared by the master and server query clients.
"""

import asyncio


class DatagramQueueProtocol(asyncio.DatagramProtocol):
    """
    Queues every datagram, or the socket error reported instead, as a
    (data, addr) pair. Readers pull from `datagrams` with their own timeout.
    """

    def __init__(self):
        self.transport = None
        self.datagrams = asyncio.Queue()
        super().__init__()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.datagrams.put_nowait((data, addr))

    def error_received(self, exc):
        self.datagrams.put_nowait((exc, None))
