import logging

from fastapi import FastAPI

from orchestrator.api import router
from orchestrator.config import get_settings
from orchestrator.db import init_db
from orchestrator.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="VM Lifecycle Orchestrator")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    settings.ensure_dirs()

    init_db()
    logger.info(
        "orchestrator startup complete run_dir=%s launch_vmm=%s dry_run=%s",
        settings.run_dir,
        settings.launch_vmm,
        settings.dry_run,
    )
