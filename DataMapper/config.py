"""
Connection settings

Settings are plain objects handed to a connection at construction time.
from_env() reads them from the process environment (and a ``.env`` file,
if present).
"""

import os
from dataclasses import dataclass, asdict
from typing import Any

from dotenv import load_dotenv

from .errors import DataMapperError


@dataclass(frozen=True)
class ConnectionSettings:
    """Parameters needed to open a database connection"""
    host: str
    user: str = ""
    password: str = ""
    database: str = ""
    port: int = 3306
    charset: str = "utf8mb4"
    autocommit: bool = True

    @classmethod
    def from_env(cls, prefix: str = "DB_") -> "ConnectionSettings":
        """
        Read settings from ``<prefix>HOST``, ``<prefix>USER``, ``<prefix>PASSWORD``,
        ``<prefix>NAME``, ``<prefix>PORT`` and ``<prefix>CHARSET``.

        Raises:
            DataMapperError: If no host is configured
        """
        load_dotenv()

        host = os.getenv(f"{prefix}HOST")
        if not host:
            raise DataMapperError(
                "invalid connection settings: no host",
                data={"user": os.getenv(f"{prefix}USER"), "password": "******"}
            )

        return cls(
            host=host,
            user=os.getenv(f"{prefix}USER", ""),
            password=os.getenv(f"{prefix}PASSWORD", ""),
            database=os.getenv(f"{prefix}NAME", ""),
            port=int(os.getenv(f"{prefix}PORT", "3306")),
            charset=os.getenv(f"{prefix}CHARSET", "utf8mb4"),
        )

    def parameters(self) -> dict[str, Any]:
        """All settings in one ``dict``, named the way the driver expects them."""
        return asdict(self)

    def __repr__(self) -> str:
        return f"ConnectionSettings({self.user}:******@{self.host}:{self.port}/{self.database})"
