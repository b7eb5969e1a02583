"""Run the SchoolChat backend with uvicorn: ``python -m schoolchat``."""
import uvicorn

from schoolchat.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "schoolchat.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
