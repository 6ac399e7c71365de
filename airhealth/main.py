"""FastAPI adapter over the ingestion pipeline and risk engine."""
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from slowapi.errors import RateLimitExceeded

from airhealth.analytics.risk import AlgorithmRegistry
from airhealth.config import CityConfig, Settings, load_algorithm_definitions, load_settings
from airhealth.exceptions import AirQualityException, ConfigurationError
from airhealth.ingestion.scheduler import DataScheduler
from airhealth.ingestion.waqi import WAQIClient
from airhealth.logging_config import get_logger, setup_logging
from airhealth.models import IngestionMode, UserContext
from airhealth.rate_limiting import RATE_LIMITS, create_limiter
from airhealth.services.ingestion_service import IngestionService
from airhealth.services.risk_service import RiskEngine
from airhealth.storage.database import Database
from airhealth.storage.gateway import MeasurementStoreGateway

logger = get_logger("api")


class RiskRequest(BaseModel):
    """Request model for risk series."""
    model_config = ConfigDict(str_strip_whitespace=True)

    city: str = Field(..., min_length=1, max_length=50)
    days: int = Field(default=30, ge=1, le=365)
    user: UserContext
    codes: Optional[List[str]] = None


class HealthRequest(BaseModel):
    """Request model for domain health scores."""
    model_config = ConfigDict(str_strip_whitespace=True)

    city: str = Field(..., min_length=1, max_length=50)
    user: UserContext


def build_scheduler(settings: Settings, city_config: CityConfig, db: Database) -> DataScheduler:
    """Wire the WAQI client, gateway and ingestion service into a scheduler."""
    client = WAQIClient(
        settings.waqi_api_token,
        city_config,
        base_url=settings.waqi_base_url,
        min_interval=settings.request_delay_seconds,
        timeout=settings.request_timeout_seconds,
    )
    service = IngestionService(client, MeasurementStoreGateway(db), settings)
    return DataScheduler(service, city_config.list_cities(), settings)


def create_app(settings: Optional[Settings] = None, start_scheduler: bool = True) -> FastAPI:
    """Build the application; all state lives on app.state."""
    settings = settings or load_settings()
    limiter = create_limiter()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        setup_logging(log_level=settings.log_level, log_file=settings.log_file)
        logger.info("Starting air quality health engine...")

        city_config = CityConfig(settings.config_path)
        db = Database(settings.database_path)
        db.connect()

        catalog = settings.config_path / "algorithms.yaml"
        if catalog.exists():
            db.upsert_algorithms(load_algorithm_definitions(catalog, settings.guidelines))

        registry = AlgorithmRegistry()
        registry.refresh(db)

        app.state.db = db
        app.state.city_config = city_config
        app.state.risk_engine = RiskEngine(db, registry, city_config, settings.guidelines)
        app.state.scheduler = None

        if settings.waqi_api_token:
            app.state.scheduler = build_scheduler(settings, city_config, db)
            if start_scheduler:
                app.state.scheduler.start()
        else:
            logger.warning("WAQI API token not configured; ingestion disabled")

        yield

        if app.state.scheduler:
            await app.state.scheduler.stop()
        db.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Air Quality Health Engine",
        description="Pollutant ingestion and health-risk scoring",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.limiter = limiter

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        logger.warning(f"Rate limit exceeded for {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "Rate limit exceeded",
                "detail": "Too many requests. Please try again later.",
                "type": "RateLimitError"
            },
            headers={"Retry-After": "60"}
        )

    @app.exception_handler(AirQualityException)
    async def air_quality_exception_handler(request: Request, exc: AirQualityException):
        logger.error(
            f"Application error: {exc.message}",
            extra={"path": request.url.path, "details": exc.details}
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.message,
                "details": exc.details,
                "type": exc.__class__.__name__
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}")
        errors = [
            {"type": e.get("type"), "loc": e.get("loc"), "msg": e.get("msg")}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "Validation failed", "details": errors, "type": "ValidationError"}
        )

    @app.get("/")
    async def root():
        return {"name": "Air Quality Health Engine", "version": "0.1.0", "status": "running"}

    @app.get("/cities")
    @limiter.limit(RATE_LIMITS["cities"])
    async def list_cities(request: Request):
        """List supported cities."""
        return {"cities": request.app.state.city_config.list_cities()}

    @app.post("/ingest/trigger")
    @limiter.limit(RATE_LIMITS["ingest"])
    async def trigger_ingestion(request: Request, mode: IngestionMode = IngestionMode.POLL):
        """Run an ingestion cycle now. Returns 409 if one is already running."""
        scheduler = request.app.state.scheduler
        if scheduler is None:
            raise ConfigurationError(
                "Ingestion not configured",
                details={"setting": "WAQI_API_TOKEN"}
            )

        report = await scheduler.trigger_now(mode)
        return {
            "status": report.status,
            "succeeded": report.succeeded,
            "failed": [f.model_dump() for f in report.failed],
            "stored": report.stored,
        }

    @app.post("/risk")
    @limiter.limit(RATE_LIMITS["risk"])
    async def risk_series(request: Request, body: RiskRequest):
        """Risk score series per eligible algorithm."""
        engine: RiskEngine = request.app.state.risk_engine
        series = engine.risk_series(body.city, body.days, body.user, body.codes)
        return {
            "city": body.city,
            "days": body.days,
            "series": {
                code: {
                    "description": engine.registry.get(code).description,
                    "points": points,
                }
                for code, points in series.items()
            }
        }

    @app.post("/health-scores")
    @limiter.limit(RATE_LIMITS["health"])
    async def health_scores(request: Request, body: HealthRequest):
        """Domain health scores for the latest reading."""
        engine: RiskEngine = request.app.state.risk_engine
        return {"city": body.city, **engine.health_scores(body.city, body.user)}

    @app.get("/comparison/{city}")
    @limiter.limit(RATE_LIMITS["comparison"])
    async def period_comparison(request: Request, city: str):
        """PM2.5 mean for each period against the period before it."""
        engine: RiskEngine = request.app.state.risk_engine
        return {"city": city, "periods": engine.period_comparison(city)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = load_settings()
    uvicorn.run(
        "airhealth.main:app",
        host=_settings.host,
        port=_settings.port,
        log_level=_settings.log_level.lower()
    )
