"""Haven server entry point: ``haven-server`` or ``python -m haven.core.server.main``.

The journal server only ever listens on the local machine unless explicitly
told otherwise, and reports at startup how the store is configured (never the
key itself).
"""

from __future__ import annotations

import logging
from ipaddress import ip_address

from haven.core.config.settings import Settings, get_settings
from haven.core.server.app import create_app
from haven.core.storage.encryption import EncryptionError, EncryptionGateway

logger = logging.getLogger(__name__)

_LOCAL_NAMES = frozenset({"localhost", "localhost.localdomain"})


class UnsafeBindError(RuntimeError):
    """Raised when the server would listen beyond loopback without opting in."""


def is_local_host(host: str) -> bool:
    """True for loopback addresses and the usual local host names."""
    if host.lower() in _LOCAL_NAMES:
        return True
    try:
        return ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def check_bind(settings: Settings) -> None:
    """Refuse a non-loopback bind unless ``HAVEN_ALLOW_INSECURE_BIND`` is set.

    Raises:
        UnsafeBindError: If the host is not local and the override is off.
    """
    if is_local_host(settings.haven_host):
        return
    if not settings.haven_allow_insecure_bind:
        raise UnsafeBindError(
            f"Refusing to serve the journal on {settings.haven_host}: entries would be "
            "reachable from other machines without an auth layer. "
            "Set HAVEN_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.warning("Journal server exposed on non-loopback host %s", settings.haven_host)


def storage_notes(settings: Settings) -> list[str]:
    """Human-readable startup notes about the journal store configuration."""
    notes: list[str] = []
    if not settings.haven_encryption_key:
        notes.append("storage disabled: HAVEN_ENCRYPTION_KEY is not set (insight tools need entries)")
    else:
        try:
            EncryptionGateway(settings.haven_encryption_key)
        except EncryptionError as exc:
            notes.append(f"storage disabled: invalid HAVEN_ENCRYPTION_KEY ({exc})")
        else:
            notes.append(f"encrypted journal at {settings.haven_db_path}")
    if settings.haven_db_path == ":memory:":
        notes.append("in-memory journal: entries are lost when the server stops")
    if not settings.haven_migrate_on_start:
        notes.append("startup migration off: old records are upgraded lazily on read")
    if settings.haven_quota_bytes is not None:
        notes.append(f"storage quota {settings.haven_quota_bytes} bytes")
    disabled = [name for name, on in vars(settings.feature_config()).items() if not on]
    if disabled:
        notes.append("insights turned off: " + ", ".join(sorted(disabled)))
    return notes


def run() -> None:
    """Start the Haven journal MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.haven_log_level.upper(), logging.INFO))

    check_bind(settings)
    for note in storage_notes(settings):
        logger.info("Startup: %s", note)
    logger.info("Serving Haven journal on %s:%d", settings.haven_host, settings.haven_port)

    mcp = create_app(settings_override=settings)
    mcp.run(
        transport="streamable-http",
        host=settings.haven_host,
        port=settings.haven_port,
    )


if __name__ == "__main__":
    run()
