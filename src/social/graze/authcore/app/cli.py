import os
from aiohttp import web
import logging
from logging.config import dictConfig
import json

AUDIT_LOGGER = "social.graze.authcore.audit"


def configure_logging():
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger().setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    # Audit events stay visible when LOG_LEVEL is raised to WARNING or above.
    logging.getLogger(AUDIT_LOGGER).setLevel(logging.INFO)


def invoke():
    configure_logging()

    from social.graze.authcore.app.config import Settings
    from social.graze.authcore.app.server import start_web_server

    settings = Settings()  # type: ignore
    web.run_app(start_web_server(settings), port=settings.http_port)


if __name__ == "__main__":
    invoke()
