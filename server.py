"""
SocietyOOM — Server entry point.

Starts the FastAPI server with the Order of Merit API.
Usage:
    python server.py [--dev] [--host 127.0.0.1]
    # or: uvicorn server:app --host 0.0.0.0 --port 8080 --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from core.database import get_connection, init_db, migrate_db
from api.routes import router as api_router

logger = logging.getLogger("societyoom")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init + migrate database."""
    conn = get_connection()
    init_db(conn)
    migrate_db(conn)
    conn.close()
    logger.info("Database ready")
    yield


app = FastAPI(title="SocietyOOM", lifespan=lifespan)

app.include_router(api_router, prefix="/api")


# ─── Main ────────────────────────────────────────────────────────────

PORT = 8080


def _is_port_in_use(port: int) -> bool:
    """Check if a TCP port is already in use."""
    import socket
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("127.0.0.1", port))
            return False
        except OSError:
            return True


def _run_server(host: str = "0.0.0.0", port: int = PORT):
    """Run uvicorn with a Server object."""
    import uvicorn
    config = uvicorn.Config(
        "server:app", host=host, port=port,
        log_level="warning",
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    import sys

    dev_mode = "--dev" in sys.argv
    host = "0.0.0.0"
    if "--host" in sys.argv:
        idx = sys.argv.index("--host")
        if idx + 1 < len(sys.argv):
            host = sys.argv[idx + 1]

    logging.basicConfig(
        level=logging.DEBUG if dev_mode else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if _is_port_in_use(PORT):
        print(f"Port {PORT} is already in use — stop the other process first")
        sys.exit(1)

    if dev_mode:
        # Dev mode: hot-reload
        import uvicorn
        uvicorn.run("server:app", host=host, port=PORT, reload=True)
    else:
        print(f"SocietyOOM server — http://localhost:{PORT}/api/status")
        _run_server(host)
