import json
import os
from contextlib import asynccontextmanager
from pathlib import Path

import log_config  # noqa: F401
import yaml

# Import endpoints router
from api import router as endpoints_router
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger

from core.agile import ManagerConfig, PlanManager
from core.agile.settings import CONFIG_FILE_NAME

# Get ingress prefix from environment variable
INGRESS_PREFIX = os.environ.get("INGRESS_PREFIX", "")
DATA_DIR = Path(os.environ.get("DATA_DIR", "/data" if os.path.isdir("/data") else "."))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan manager for FastAPI app."""
    routes = []
    for route in app.routes:
        path = getattr(route, "path", getattr(route, "mount_path", "Unknown path"))
        methods = getattr(route, "methods", None)
        routes.append(f"{path} - {methods}" if methods is not None else f"{path} - Mounted route")
    logger.info(f"Registered routes: {routes}")

    yield

    agile_controller.shutdown()


app = FastAPI(root_path=INGRESS_PREFIX, lifespan=lifespan)


# Add global exception handler to prevent server restarts
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    import traceback

    tb_str = traceback.format_exception(type(exc), exc, exc.__traceback__)

    logger.error(f"Unhandled exception: {exc!s}")
    logger.error(f"Request path: {request.url.path}")
    logger.error(f"Stack trace:\n{''.join(tb_str)}")

    # Return a 500 response but keep the server running
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": str(type(exc).__name__),
            "message": "The server encountered an internal error but is still running.",
        },
    )


logger.info(f"Ingress prefix: {INGRESS_PREFIX}")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

static_directory = "/app/frontend"
if os.path.exists(static_directory):
    app.mount("/assets", StaticFiles(directory=f"{static_directory}/assets"), name="assets")

app.include_router(endpoints_router)


class AgileController:
    def __init__(self):
        """Load settings and build the plan manager."""
        load_dotenv(DATA_DIR / "options.env")
        load_dotenv()

        config_path = DATA_DIR / CONFIG_FILE_NAME
        config = ManagerConfig.load_from_file(config_path)
        if config is None:
            options = self._load_options()
            if not options:
                logger.warning("No configuration options found, using defaults")
            config = ManagerConfig.from_dict(options or {})

        # Simulate mode can be forced from the environment for a dry run
        simulate_env = os.environ.get("SIMULATE")
        if simulate_env is not None:
            config.inverter.simulate = simulate_env.lower() in ("true", "1", "yes")
        if config.inverter.simulate:
            logger.info("Simulate mode - inverter writes will be logged only")

        config.validate()

        self.manager = PlanManager(config=config, config_path=config_path, data_dir=DATA_DIR)

        self.scheduler = BackgroundScheduler(
            {
                "apscheduler.executors.default": {
                    "class": "apscheduler.executors.pool:ThreadPoolExecutor",
                    "max_workers": "10",
                },
                "apscheduler.job_defaults": {
                    "misfire_grace_time": 30,  # Allow 30 seconds of misfire before warning
                    "coalesce": True,
                    "max_instances": 1,
                },
            }
        )

        logger.info("Agile Controller initialized")

    def _load_options(self):
        """Load options from the add-on options.json or a development config.yaml."""
        options_json = DATA_DIR / "options.json"
        config_yaml = Path(os.environ.get("CONFIG_YAML", "/app/config.yaml"))

        if options_json.exists():
            try:
                with options_json.open() as f:
                    options = json.load(f)
                logger.info(f"Loaded options from {options_json}")
                return options
            except (OSError, ValueError) as e:
                logger.error(f"Error loading options from {options_json}: {e!s}")

        if config_yaml.exists():
            try:
                with config_yaml.open() as f:
                    config = yaml.safe_load(f) or {}

                if "options" in config:
                    logger.info(f"Loaded options from {config_yaml} (options section)")
                    return config["options"]

                logger.warning(f"No 'options' section found in {config_yaml}, using entire file")
                return config
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Error loading from {config_yaml}: {e!s}")

        return None

    def _init_scheduler_jobs(self):
        """Configure scheduler jobs."""
        manager = self.manager

        # New Agile prices are published around 16:00; refresh every half hour
        self.scheduler.add_job(
            manager.refresh_prices, CronTrigger(minute="0,30", second=5), id="prices"
        )

        self.scheduler.add_job(
            manager.refresh_battery_state, CronTrigger(minute="*/2"), id="battery"
        )

        self.scheduler.add_job(
            manager.recalculate, CronTrigger(minute="*/5", second=30), id="recalculate"
        )

        # Solcast free tier allows 10 calls a day across sites
        self.scheduler.add_job(
            manager.refresh_forecast, CronTrigger(hour="6,10,14,18,22", minute=0), id="forecast"
        )

        self.scheduler.add_job(
            manager.update_inverter_time, CronTrigger(hour=2, minute=0), id="inverter_time"
        )

        self.scheduler.add_job(
            manager.update_history_from_inverter, CronTrigger(minute=10), id="history"
        )

        self.scheduler.start()

    def start(self):
        """Run the first planning pass and start the scheduler."""
        self.manager.start()
        self._init_scheduler_jobs()
        logger.info("Scheduler started successfully")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


# Global controller instance
agile_controller = AgileController()
agile_controller.start()


@app.get("/")
async def root_index():
    logger.info("Root path requested")
    return FileResponse("/app/frontend/index.html")


# All API endpoints are found in api.py and are imported via the router
