"""
Configuration management for circle clients and the local ledger.
"""
import json
import os
from dataclasses import dataclass, asdict

from .predicate import AcceptanceLevel, DEFAULT_MAX_PAYLOAD_SIZE

DEFAULT_APP_ID = "rosca/v1"


@dataclass
class LedgerConfig:
    """Ledger and acceptance predicate configuration."""
    app_id: str = DEFAULT_APP_ID
    acceptance_level: str = AcceptanceLevel.STRUCTURAL.value
    max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE

    def __post_init__(self):
        # Fails fast on an unknown level name
        AcceptanceLevel(self.acceptance_level)

    @property
    def level(self) -> AcceptanceLevel:
        return AcceptanceLevel(self.acceptance_level)


@dataclass
class ClientConfig:
    """Caller-side retry policy."""
    max_retries: int = 3


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "./circle_data"
    write_buffer_size: int = 4 * 1024 * 1024  # 4MB
    max_open_files: int = 100


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    ledger: LedgerConfig
    client: ClientConfig
    database: DatabaseConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            ledger=LedgerConfig(),
            client=ClientConfig(),
            database=DatabaseConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls(
            ledger=LedgerConfig(**data.get('ledger', {})),
            client=ClientConfig(**data.get('client', {})),
            database=DatabaseConfig(**data.get('database', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'ledger': asdict(self.ledger),
            'client': asdict(self.client),
            'database': asdict(self.database),
            'monitoring': asdict(self.monitoring)
        }
