import argparse
import logging
import signal
import sys
import threading

from dotenv import find_dotenv, load_dotenv

from .config import ProxyConfig
from .log import configure_logging
from .server import ProxyServer

logger = logging.getLogger('corsproxy')


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog='corsproxy',
        description="Forwarding CORS proxy. Usage: http://<host>:<port>/?url=<target URL>"
    )
    parser.add_argument('--config', help='Path to a JSON configuration file')
    parser.add_argument('--host', help='Host to bind (overrides config and HOST)')
    parser.add_argument('--port', type=int, help='Port to listen on (overrides config and PORT)')
    parser.add_argument('--env-file', help='Path to a .env file (default: nearest .env from the working directory)')
    args = parser.parse_args(argv)

    # Variables already set in the environment win over the .env file
    load_dotenv(args.env_file or find_dotenv(usecwd=True))
    try:
        config = ProxyConfig(args.config)
    except ValueError as e:
        parser.error(str(e))
    if args.host:
        config.config['host'] = args.host
    if args.port is not None:
        config.config['port'] = args.port

    try:
        configure_logging(config.get('logging.level', 'info'), config.get('logging.file'))
    except (ValueError, OSError) as e:
        parser.error(f"Cannot configure logging: {e}")

    server = ProxyServer.from_config(config)

    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _stop)
    try:
        server.start()
    except KeyboardInterrupt:
        server.shutdown()
    except OSError as e:
        logger.error(f"Cannot start server: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
