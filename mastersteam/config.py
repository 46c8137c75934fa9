"""
Configuration for the mastersteam search service
"""

import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Service configuration"""

    # HTTP API
    API_HOST = os.getenv('API_HOST', '0.0.0.0')
    API_PORT = int(os.getenv('API_PORT', '8080'))

    # Master server (directory)
    MASTER_HOST = os.getenv('MASTER_HOST', 'hl2master.steampowered.com')
    MASTER_PORT = int(os.getenv('MASTER_PORT', '27011'))
    MASTER_TIMEOUT = float(os.getenv('MASTER_TIMEOUT', '5'))
    MASTER_MAX_PAGES = int(os.getenv('MASTER_MAX_PAGES', '1000'))  # 0 = no cap
    MASTER_PAGE_DELAY = float(os.getenv('MASTER_PAGE_DELAY', '0'))

    # Per-server A2S queries
    QUERY_TIMEOUT = float(os.getenv('QUERY_TIMEOUT', '3'))
    QUERY_WORKERS = int(os.getenv('QUERY_WORKERS', '20'))
    QUERY_QUEUE_SIZE = int(os.getenv('QUERY_QUEUE_SIZE', '1000'))

    # 'contain' turns decoder crashes into malformed-frame errors,
    # 'propagate' lets them through for debugging
    FAULT_POLICY = os.getenv('FAULT_POLICY', 'contain')

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    @classmethod
    def from_env(cls):
        """Create config from environment"""
        return cls()

    def __repr__(self):
        return (
            f"<Config API={self.API_HOST}:{self.API_PORT} "
            f"MASTER={self.MASTER_HOST}:{self.MASTER_PORT} WORKERS={self.QUERY_WORKERS}>"
        )


# Singleton instance
config = Config()
