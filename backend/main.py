"""
Basket API — receipt upload, line-item reconciliation, approval/learning,
verified products, and spending analytics.

Run with:  uvicorn main:app --app-dir backend
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import time

from db.database import DB_PATH, init_db
from routers import receipts, products, trends

VERSION = "0.1.0"

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
DEBUG = LOG_LEVEL == "DEBUG"

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
if not DEBUG:
    for noisy in ("uvicorn.access", "httpx", "httpcore", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

logger = logging.getLogger("basket")

# ── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Basket",
    description="Grocery receipt reconciliation against human-verified products",
    version=VERSION,
)

cors_origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins or ["*"],
    allow_credentials=bool(cors_origins),   # wildcard origins can't carry credentials
    allow_methods=["*"],
    allow_headers=["*"],
)

for module, prefix in ((receipts, "receipts"), (products, "products"), (trends, "trends")):
    app.include_router(module.router, prefix=f"/api/{prefix}", tags=[prefix])


@app.middleware("http")
async def access_log(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    status = response.status_code
    if status >= 400 or DEBUG:
        logger.log(
            logging.WARNING if status >= 400 else logging.DEBUG,
            "%s %s → %d (%.0fms) user=%s",
            request.method, request.url.path, status,
            (time.perf_counter() - started) * 1000,
            request.headers.get("x-user-id", "-"),
        )
    return response


@app.on_event("startup")
async def startup():
    logger.info("Basket v%s starting (log=%s, db=%s)", VERSION, LOG_LEVEL, DB_PATH)
    await init_db()


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}


@app.get("/api/diagnose")
async def diagnose():
    """Which OCR and AI collaborators this deployment can actually use."""
    from services.ocr_service import OCR_AVAILABLE, HEIF_AVAILABLE
    checks = {}

    if OCR_AVAILABLE:
        import pytesseract
        try:
            checks["tesseract"] = {"ok": True, "version": str(pytesseract.get_tesseract_version())}
        except pytesseract.TesseractNotFoundError:
            checks["tesseract"] = {"ok": False, "error": "tesseract binary not found in PATH"}
    else:
        checks["tesseract"] = {"ok": False, "error": "pytesseract/Pillow not installed"}

    checks["heic_support"] = {"ok": HEIF_AVAILABLE}

    db_dir = os.path.dirname(DB_PATH) or "."
    checks["database"] = {"ok": os.access(db_dir, os.W_OK), "path": DB_PATH}

    # presence only, never the key itself
    checks["anthropic_key"] = {"ok": bool(os.environ.get("ANTHROPIC_API_KEY"))}

    return {"all_ok": all(c["ok"] for c in checks.values()), "checks": checks}
