from __future__ import annotations

import asyncio
import logging
import signal

import uvicorn

from docsync.api import create_app
from docsync.config import load_options
from docsync.service import Workspace

__VERSION__ = "0.1.0"


async def main() -> None:
    options = load_options()
    log_level_map = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }
    logging.basicConfig(
        level=log_level_map.get(options.log_level.lower(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    workspace = await Workspace.open(options.workspace_path, options)
    logging.getLogger(__name__).info(
        "DocSync starting | version=%s | workspace=%s | remote=%s | branch=%s",
        __VERSION__,
        workspace.root,
        options.remote_name,
        options.branch,
    )
    app = create_app(workspace)
    http_port = options.http_api_port
    server: uvicorn.Server | None = None
    if http_port > 0:
        config = uvicorn.Config(app, host="127.0.0.1", port=http_port, log_level="info")
        server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown_signal() -> None:
        if server:
            server.should_exit = True
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown_signal)

    try:
        async with asyncio.TaskGroup() as tg:
            if server:
                tg.create_task(server.serve())
            tg.create_task(stop_event.wait())
    finally:
        await workspace.close()


if __name__ == "__main__":
    asyncio.run(main())
