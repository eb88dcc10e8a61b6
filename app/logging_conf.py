import logging, sys

def configure_logging(level: str = "INFO"):
    root = logging.getLogger()
    root.setLevel(level.upper())
    # uvicorn --reload and repeated create_app() calls must not stack handlers
    if any(getattr(h, "_scrape_store", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s - %(message)s"
    )
    handler.setFormatter(formatter)
    handler._scrape_store = True
    root.addHandler(handler)
