# Vault Anchor - Main Entry Point
#
# Runs the audit API server (FastAPI + uvicorn).  Ledger backend and
# storage are selected from LEDGER_* environment variables / .env.

import sys
import argparse

from . import __version__
from .core import get_audit_logger, EventType, EventSeverity


def main():
    """Main entry point for Vault Anchor."""
    parser = argparse.ArgumentParser(
        description="Vault Anchor - tamper-evident ledger audit API for credential vaults",
    )

    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="API host (default: 127.0.0.1)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="API port (default: 8000)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Vault Anchor v{__version__}"
    )

    args = parser.parse_args()

    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message="Vault Anchor starting",
        details={"version": __version__, "host": args.host, "port": args.port}
    )

    print(f"Starting Vault Anchor API on {args.host}:{args.port} (Ctrl+C to stop)")

    from .api.main import start_api_server

    try:
        start_api_server(host=args.host, port=args.port)
    except KeyboardInterrupt:
        print("\nShutting down...")
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.INFO,
            message="Vault Anchor stopped (user interrupt)"
        )
    except Exception as e:
        print(f"\nError: {e}")
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.CRITICAL,
            message=f"Vault Anchor crashed: {e}"
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
