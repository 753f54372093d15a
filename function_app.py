
import os
import logging
import azure.functions as func

from src.function_blueprints.q_account_deleted import bp as account_deleted_bp

app = func.FunctionApp()


def _configure_logging() -> None:
    lvl = (os.getenv("AZURE_SDK_LOG_LEVEL") or "").upper()
    if lvl:
        level = getattr(logging, lvl, logging.INFO)
        logging.getLogger("azure").setLevel(level)
        logging.getLogger("azure.cosmos").setLevel(level)
    logging.getLogger("postservice").setLevel(
        getattr(logging, (os.getenv("POSTSERVICE_LOG_LEVEL") or "INFO").upper(), logging.INFO)
    )


_configure_logging()

app.register_functions(account_deleted_bp)
