import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from cidery_core.config import settings
from cidery_core.lookups import router as lookups_router
from cidery_core.vendors_api import router as vendors_router
from cidery_core.varieties_admin import router as varieties_admin_router
from cidery_core.vessels_api import router as vessels_router
from cidery_core.purchases_api import router as purchases_router
from cidery_core.press_api import router as press_router
from cidery_core.batches_api import router as batches_router
from cidery_core.cellar_api import router as cellar_router
from cidery_core.carbonation_api import router as carbonation_router
from cidery_core.distillation_api import router as distillation_router
from cidery_core.packaging_api import router as packaging_router
from cidery_core.ttb_api import router as ttb_router
from cidery_core.production_reports_api import router as production_reports_router
from cidery_core.reports_api import router as reports_router

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("cidery_core")

app = FastAPI(title=settings.app_title)
app.include_router(lookups_router)
app.include_router(vendors_router)
app.include_router(varieties_admin_router)
app.include_router(vessels_router)
app.include_router(purchases_router)
app.include_router(press_router)
app.include_router(batches_router)
app.include_router(cellar_router)
app.include_router(carbonation_router)
app.include_router(distillation_router)
app.include_router(packaging_router)
app.include_router(ttb_router)
app.include_router(production_reports_router)
app.include_router(reports_router)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    # the request's session is discarded with its transaction
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=409, content={"detail": str(exc.orig)})


@app.get("/health")
async def health():
    return {"ok": True}
