"""Run the server: ``python -m app`` from the backend directory."""
import uvicorn

from app.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "app.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.logging.level.lower(),
        ws_ping_interval=config.realtime.ping_interval,
        ws_ping_timeout=config.realtime.ping_timeout,
    )


if __name__ == "__main__":
    main()
