"""
HTTP API Server

Exposes master server searches as JSON.

Protocol: HTTP GET
Endpoints:
    - GET /search/{app_id}/{name_pattern}: Servers of an app whose name
      matches the glob pattern
    - GET /server/{address}: One server, looked up through the master
    - GET /health: Health check

Response body:
    {"data": [{"<ip:port>": {...record or error...}}, ...], "total": <count>}

A failed master server enumeration answers 502 with {"error": "..."}.
"""

import logging

from aiohttp import web

from mastersteam.errors import DirectoryError
from mastersteam.models import parse_address
from mastersteam.servers.search import SearchService

logger = logging.getLogger(__name__)


@web.middleware
async def access_log_middleware(request: web.Request, handler):
    """Log every request before handling it."""
    logger.info(f"[API] access: {request.remote} {request.method} {request.rel_url}")
    return await handler(request)


class ApiServer:
    """
    aiohttp front end for the search service.

    Attributes:
        config: Server configuration object
        search: SearchService running the queries
        app: aiohttp web application
    """

    def __init__(self, config, search_service: SearchService = None):
        """
        Initialize API Server.

        Args:
            config: Server configuration with API_HOST and API_PORT
            search_service: Optional SearchService (built from config otherwise)
        """
        self.config = config
        self.search = search_service or SearchService(config)
        self.app = web.Application(middlewares=[access_log_middleware])
        self.runner = None
        self._setup_routes()

        logger.info(f"API Server initialized - master: {config.MASTER_HOST}:{config.MASTER_PORT}")

    def _setup_routes(self):
        """Setup HTTP routes."""
        self.app.router.add_get('/search/{app_id}/{name_pattern}', self.handle_search)
        self.app.router.add_get('/server/{address}', self.handle_server)
        self.app.router.add_get('/health', self.handle_health)

    # -------------------------------------------------------------------------
    # Request Handlers
    # -------------------------------------------------------------------------

    async def handle_search(self, request: web.Request) -> web.Response:
        """Search the master server by app id and server name glob."""
        try:
            app_id = int(request.match_info['app_id'])
        except ValueError:
            return web.json_response({'error': 'app_id must be an integer'}, status=400)

        name_pattern = request.match_info['name_pattern']
        logger.info(f"[API] Search: appid={app_id}, name={name_pattern!r}")

        return await self._respond(self.search.search_servers(app_id, name_pattern))

    async def handle_server(self, request: web.Request) -> web.Response:
        """Look up a single server address through the master server."""
        gameaddr = request.match_info['address'].strip()
        try:
            parse_address(gameaddr)
        except ValueError as e:
            return web.json_response({'error': str(e)}, status=400)

        logger.info(f"[API] Server lookup: {gameaddr}")

        return await self._respond(self.search.lookup_server(gameaddr))

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({'status': 'ok'})

    async def _respond(self, search) -> web.Response:
        try:
            collector = await search
        except DirectoryError as e:
            logger.error(f"[API] Could not query the master: {e}")
            return web.json_response({'error': str(e)}, status=502)

        return web.json_response(collector.to_envelope())

    # -------------------------------------------------------------------------
    # Server Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """Start API server and begin listening for connections."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        site = web.TCPSite(
            self.runner,
            self.config.API_HOST,
            self.config.API_PORT
        )
        await site.start()

        logger.info(
            f"API Server started on {self.config.API_HOST}:{self.config.API_PORT}"
        )

    async def stop(self):
        """Stop API server and cleanup resources."""
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            logger.info("API Server stopped")
