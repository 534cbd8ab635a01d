"""Entry point for running autopaste as a module: python -m autopaste"""

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from autopaste.config import Config


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity setting."""
    level = logging.INFO if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Reduce noise from third-party libraries
    for name in ("uvicorn.access", "httpx", "asyncio"):
        logging.getLogger(name).setLevel(logging.ERROR)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Autopaste delivery service")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    args = parse_args(argv)
    config = Config.from_env()
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    config.verbose = config.verbose or args.verbose

    setup_logging(config.verbose)

    import uvicorn

    from autopaste.server import create_app

    print(f"\n🚀 Autopaste listening at http://{config.server.host}:{config.server.port}")
    print("   Press Ctrl+C to stop\n")

    try:
        uvicorn.run(
            create_app(config),
            host=config.server.host,
            port=config.server.port,
            log_level="info" if config.verbose else "warning",
        )
        return 0
    except KeyboardInterrupt:
        print("\n👋 Interrupted")
        return 130
    except Exception as e:
        logging.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
