import logging

from dotenv import load_dotenv

# Load .env as early as possible for local development
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kpi_compliance.core.config import Settings
from kpi_compliance.api.v1.deps import get_dispatcher, get_processor, get_sweeper
from kpi_compliance.api.v1.routes import router as api_router
from kpi_compliance.core.log_store import init_logging_buffer
from kpi_compliance.kpi import load_kpi_config
from kpi_compliance.notifications.templates import load_email_templates

logging.basicConfig(level=Settings.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title=Settings.PROJECT_NAME,
    version=Settings.APP_VERSION,
    openapi_url=f"{Settings.API_V1_STR}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=Settings.API_V1_STR)


@app.get("/")
def root():
    return {
        "message": "FE KPI Compliance API",
        "docs": "/docs",
        "health": f"{Settings.API_V1_STR}/health",
    }


@app.on_event("startup")
async def startup_event():
    logger.info("Starting API: %s v%s", Settings.PROJECT_NAME, Settings.APP_VERSION)
    try:
        init_logging_buffer(Settings.LOG_BUFFER_CAPACITY)
        logger.info("Log buffer initialized: capacity=%s", Settings.LOG_BUFFER_CAPACITY)
    except Exception as e:
        logger.warning("Failed to initialize log buffer: %s", e)

    # Fail fast on a broken rule file or template catalogue
    cfg = load_kpi_config()
    templates = load_email_templates()
    logger.info(
        "Configuration loaded: metrics=%s templates=%s",
        len(cfg.get("metrics", {})), len(templates),
    )

    if Settings.AUTOMATION_ENABLED:
        dispatcher = get_dispatcher()
        get_sweeper(get_processor(dispatcher)).start()
    else:
        logger.info("Automation sweeper disabled")


@app.on_event("shutdown")
async def shutdown_event():
    if Settings.AUTOMATION_ENABLED:
        dispatcher = get_dispatcher()
        await get_sweeper(get_processor(dispatcher)).stop()
    logger.info("API stopped")
