import logging
import sys

_HANDLER_NAME = "fleet-stdout"

def configure_logging(level: str = "INFO"):
    root = logging.getLogger()
    root.setLevel(level)
    # uvicorn --reload imports main twice; keep a single stdout handler
    if any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
    ))
    root.addHandler(handler)
    # httpx logs every request at INFO; the sync loop polls a lot
    logging.getLogger("httpx").setLevel(logging.WARNING)
