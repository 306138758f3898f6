from __future__ import annotations
import argparse
import sys


def main() -> None:
    # Import and delegate to the CLI main
    try:
        from elmlink import elmlink_cli as _cli
    except ImportError as e:
        print('Failed to import CLI module:', e)
        sys.exit(2)
    _cli.main()


def serve_main() -> None:
    # Serve the web API
    import uvicorn
    p = argparse.ArgumentParser(prog='elmlink-web')
    p.add_argument('--host', default='127.0.0.1')
    p.add_argument('--port', type=int, default=8000)
    args = p.parse_args()
    uvicorn.run('elmlink.webapp.main:app', host=args.host, port=args.port, log_level='info')
