"""
Records produced by the master server and A2S query clients.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, NamedTuple, Optional

DEFAULT_QUERY_PORT = 27015


class ServerAddress(NamedTuple):
    """UDP endpoint of one game server."""

    host: str
    port: int

    def __str__(self):
        return f"{self.host}:{self.port}"


def parse_address(text: str, default_port: int = DEFAULT_QUERY_PORT) -> ServerAddress:
    """
    Parse a "host:port" string into a ServerAddress.

    Args:
        text: Address text, e.g. "203.0.113.7:27015"
        default_port: Port used when the text carries none

    Returns:
        ServerAddress

    Raises:
        ValueError: If the host is empty or the port is not in 0-65535

    Example:
        >>> parse_address("203.0.113.7")
        ServerAddress(host='203.0.113.7', port=27015)
    """
    text = text.strip()
    host, sep, port_text = text.rpartition(':')
    if not sep:
        host, port_text = text, ''

    if not host:
        raise ValueError(f"Invalid server address: {text!r}")

    if not port_text:
        return ServerAddress(host, default_port)

    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in server address: {text!r}") from None

    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"Port out of range in server address: {text!r}")

    return ServerAddress(host, port)


class ServerType(Enum):
    DEDICATED = 'dedicated'
    LISTEN = 'listen'
    PROXY = 'proxy'

    def __str__(self):
        return self.value


class ServerOS(Enum):
    LINUX = 'linux'
    WINDOWS = 'windows'
    MAC = 'mac'

    def __str__(self):
        return self.value


class Visibility(Enum):
    PUBLIC = 'public'
    PRIVATE = 'private'

    def __str__(self):
        return self.value


@dataclass
class ExtendedInfo:
    """Fields only Source-format info responses carry."""

    app_id: int
    game_version: str
    port: int = 0
    steam_id: int = 0
    game_mode: str = ''
    game_id: int = 0


@dataclass
class InfoRecord:
    """Decoded A2S_INFO response."""

    protocol: int
    name: str
    map_name: str
    folder: str
    game: str
    players: int
    max_players: int
    bots: int
    server_type: ServerType
    os: ServerOS
    visibility: Visibility
    vac: bool
    ext: Optional[ExtendedInfo] = None


@dataclass
class PlayerRecord:
    """One entry of an A2S_PLAYER response."""

    index: int
    name: str
    score: int
    duration: float

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'name': self.name,
            'score': self.score,
            'duration': self.duration,
        }


@dataclass
class QueryOutcome:
    """
    Result of querying one address: either an info record (with an optional
    roster) or the error that stopped the query.
    """

    address: ServerAddress
    info: Optional[InfoRecord] = None
    players: Optional[List[PlayerRecord]] = None
    error: Optional[BaseException] = field(default=None, repr=False)

    @classmethod
    def success(cls, address, info, players=None):
        return cls(address=address, info=info, players=players)

    @classmethod
    def failure(cls, address, error):
        return cls(address=address, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        # Address is already the key of the record
        message = getattr(self.error, 'message', None) or str(self.error)
        return message or type(self.error).__name__

    def to_dict(self) -> dict:
        """
        Render the JSON record for this outcome.

        Successful outcomes carry the server fields; failed ones carry only
        the address and a human readable error.
        """
        ip = str(self.address)

        if not self.ok:
            return {'ip': ip, 'error': self.error_message}

        info = self.info
        record = {
            'ip': ip,
            'protocol': info.protocol,
            'name': info.name,
            'map': info.map_name,
            'folder': info.folder,
            'game': info.game,
            'players': info.players,
            'max_players': info.max_players,
            'bots': info.bots,
            'type': str(info.server_type),
            'os': str(info.os),
            'visibility': str(info.visibility),
            'vac': info.vac,
        }

        if info.ext is not None:
            optional = {
                'appid': info.ext.app_id,
                'game_version': info.ext.game_version,
                'port': info.ext.port,
                'game_mode': info.ext.game_mode,
            }
            # Zero and empty values are left out; the ids are always present
            record.update({key: value for key, value in optional.items() if value})
            record['steamid'] = str(info.ext.steam_id)
            record['gameid'] = str(info.ext.game_id)

        if self.players:
            record['players_online'] = [player.to_dict() for player in self.players]

        return record
