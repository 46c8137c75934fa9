"""UDP clients for the master server and individual game servers."""

from mastersteam.clients.master_querier import MasterServerQuerier
from mastersteam.clients.server_querier import ServerQuerier, query_server

__all__ = ["MasterServerQuerier", "ServerQuerier", "query_server"]
