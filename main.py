"""
Entry point for the content gap analyzer
"""
import asyncio
import sys

from app import create_cli, main


def run(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    args = create_cli().parse_args(argv)

    if args.command == "server":
        # uvicorn runs its own event loop
        from api import run_server
        print(f"Starting API server on {args.host}:{args.port}")
        run_server(args.host, args.port)
    else:
        asyncio.run(main(argv))


if __name__ == "__main__":
    run()
