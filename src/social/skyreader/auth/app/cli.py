import json
import logging
import os
from logging.config import dictConfig

from aiohttp import web


def configure_logging(debug: bool = False):
    """
    Use the dictConfig file named by ``LOGGING_CONFIG_FILE`` when set,
    otherwise log to stderr at INFO (DEBUG when the service runs in debug
    mode). Access logs stay at WARNING unless debugging.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")
    if logging_config_file:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not debug:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def invoke():
    from social.skyreader.auth.app.config import Settings
    from social.skyreader.auth.app.server import start_web_server

    settings = Settings()  # type: ignore
    configure_logging(settings.debug)

    logging.getLogger(__name__).info(
        "serving %s on port %d", settings.public_base_url, settings.http_port
    )
    web.run_app(
        start_web_server(settings), port=settings.http_port, print=None
    )


if __name__ == "__main__":
    invoke()
