"""Run tmuxer as an MCP server over stdio (default) or streamable HTTP.

Usage:
    python -m tmuxer [--session NAME] [--keep-alive] [--socket NAME]
                     [--id-policy sequential|random]
                     [--transport stdio|http] [--port PORT]
                     [--log-level LEVEL]

Jobs live in tmux, so they survive tmuxer restarts.  Unless --keep-alive is
given (or a job was created with keep_alive), jobs started by this process
are sent SIGTERM when it shuts down.
"""

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys

import uvicorn

from tmuxer.config import TRANSPORTS, Config
from tmuxer.errors import SessionSetupError
from tmuxer.ids import POLICIES
from tmuxer.manager import JobManager
from tmuxer.server import create_server, render_instructions

log = logging.getLogger(__name__)


async def _serve(config: Config) -> int:
    async with JobManager.from_config(config) as manager:
        # The session must exist before any tool call is accepted
        try:
            session = await manager.ensure_session()
        except SessionSetupError:
            log.exception("Could not set up tmux session")
            return 1
        log.info("Using tmux session '%s'", session)

        instructions = render_instructions(await manager.list_jobs())
        server = create_server(manager=manager, port=config.port, instructions=instructions)

        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

        if config.transport == "http":
            uvi = uvicorn.Server(uvicorn.Config(
                server.streamable_http_app(),
                host="127.0.0.1", port=config.port, log_level="info",
            ))
            # _serve() skips uvicorn's own signal capture, which would
            # replace the handlers installed above.
            serve_task = asyncio.create_task(uvi._serve())
            log.info("tmuxer listening on http://127.0.0.1:%d/mcp", config.port)
        else:
            uvi = None
            serve_task = asyncio.create_task(server.run_stdio_async())
            log.info("tmuxer running on stdio")

        # Block until a signal arrives or the transport closes (stdin EOF)
        shutdown_task = asyncio.create_task(shutdown.wait())
        await asyncio.wait(
            {serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED,
        )
        log.info("Shutting down")

        if uvi is not None:
            uvi.should_exit = True
        elif not serve_task.done():
            serve_task.cancel()
        try:
            await serve_task
        except asyncio.CancelledError:
            pass
        except Exception:
            log.exception("Transport failed")
        shutdown_task.cancel()

        # Leaving the context terminates jobs not started with keep_alive
        log.info("Stopping jobs started by this server")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MCP server for background jobs in tmux")
    parser.add_argument(
        "--session", default=None,
        help="Fixed tmux session name (default: tmuxer-<hash of cwd>)",
    )
    parser.add_argument(
        "--keep-alive", action="store_true", default=None,
        help="Keep jobs running when tmuxer exits",
    )
    parser.add_argument("--socket", default=None, help="tmux socket name (tmux -L)")
    parser.add_argument("--id-policy", choices=sorted(POLICIES), default=None)
    parser.add_argument("--transport", choices=TRANSPORTS, default=None)
    parser.add_argument("--port", type=int, default=None, help="HTTP port")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, base: Config | None = None) -> Config:
    """Overlay the command-line flags that were given onto *base*."""
    overrides = {
        "session": args.session,
        "keep_alive": args.keep_alive,
        "socket_name": args.socket,
        "id_policy": args.id_policy,
        "transport": args.transport,
        "port": args.port,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    return dataclasses.replace(
        base or Config.from_env(),
        **{key: value for key, value in overrides.items() if value is not None},
    )


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config = build_config(args)

    # stderr only: stdout belongs to the stdio transport
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [tmuxer] %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    # The MCP SDK logs a full traceback when an HTTP client disconnects
    # before the response is sent (ClosedResourceError); keep it at DEBUG.
    class _SuppressDisconnect(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info and record.exc_info[1] is not None:
                if "ClosedResourceError" in repr(record.exc_info[1]):
                    record.levelno = logging.DEBUG
                    record.levelname = "DEBUG"
                    record.msg = "Client disconnected before response completed"
                    record.args = None
                    record.exc_info = None
                    record.exc_text = None
            return True

    logging.getLogger("mcp.server.streamable_http_manager").addFilter(
        _SuppressDisconnect()
    )

    sys.exit(asyncio.run(_serve(config)))


if __name__ == "__main__":
    main()
