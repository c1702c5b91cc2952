import logging
import sys

from pythonjsonlogger import jsonlogger

from contract_engine.core.config import Settings
from contract_engine.core.middleware import request_id_ctx


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        return True


def configure_logging(settings: Settings) -> None:
    """
    Structured logging (JSON) for the contract engine.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # clear handlers if reloaded
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    fmt = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
        rename_fields={"levelname": "level", "name": "logger"},
    )
    handler.setFormatter(fmt)
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(level)
    logging.getLogger("uvicorn.error").setLevel(level)
    # apscheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))
