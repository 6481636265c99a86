"""
Broker configuration.

Values resolve in this order: explicit override argument, then the
``WALLET_BROKER_*`` environment variable, then the class default.
"""
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ENV_PREFIX = "WALLET_BROKER_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_origins(value: str) -> Tuple[str, ...]:
    return tuple(o.strip().rstrip("/") for o in value.split(",") if o.strip())


@dataclass(frozen=True)
class BrokerConfig:
    """
    Settings for a broker process.

    Attributes:
        host: Interface the WebSocket front end binds to
        port: Port the WebSocket front end binds to
        extension_origins: Origins treated as the trusted approval UI
        default_chain_id: Chain id reported by ``eth_chainId``
        mimic_metamask: Whether pages are told to treat the provider as MetaMask
        rpc_url: Ethereum JSON-RPC endpoint for forwarding and broadcasting
        log_level: Root log level used by the command line entry point
    """
    host: str = "127.0.0.1"
    port: int = 8765
    extension_origins: Tuple[str, ...] = ()
    default_chain_id: int = 1
    mimic_metamask: bool = False
    rpc_url: Optional[str] = None
    log_level: str = "INFO"

    _parsers = {
        "port": int,
        "default_chain_id": int,
        "mimic_metamask": _parse_bool,
        "extension_origins": _parse_origins,
    }

    @classmethod
    def env_var(cls, name: str) -> str:
        """Environment variable name for a config field."""
        return ENV_PREFIX + name.upper()

    @classmethod
    def from_env(cls, **overrides: Any) -> "BrokerConfig":
        """
        Build a config from the environment.

        Args:
            **overrides: Field values that win over the environment

        Returns:
            BrokerConfig instance

        Raises:
            ValueError: If an environment value cannot be parsed or an
                override names an unknown field
        """
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        for name in known:
            if name in overrides and overrides[name] is not None:
                values[name] = overrides[name]
                continue
            raw = os.environ.get(cls.env_var(name))
            if raw is None or raw == "":
                continue
            parser = cls._parsers.get(name, str)
            try:
                values[name] = parser(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {cls.env_var(name)}: {raw!r}") from e

        config = cls(**values)
        logger.debug(f"Loaded broker config: {config}")
        return config

    def is_extension_origin(self, origin: Optional[str]) -> bool:
        """Check whether an origin belongs to the trusted approval UI."""
        if not origin:
            return False
        return origin.rstrip("/") in self.extension_origins
