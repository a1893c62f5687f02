import asyncio
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

load_dotenv()

from billing_route import ledger, router as billing_router  # noqa: E402
from config import CORS_ORIGINS, LOG_LEVEL, settings  # noqa: E402
from db import engine, init_db  # noqa: E402
from errors import BillingError  # noqa: E402

logging.basicConfig(
  level=LOG_LEVEL,
  format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def run_overdue_sweep() -> int:
  with Session(engine) as session:
    return ledger.refresh_overdue(session)


async def overdue_sweep_loop(interval: int) -> None:
  while True:
    try:
      await asyncio.to_thread(run_overdue_sweep)
    except Exception:
      logger.exception("overdue sweep failed")
    await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
  init_db()
  task = None
  if settings.overdue_sweep_seconds > 0:
    task = asyncio.create_task(overdue_sweep_loop(settings.overdue_sweep_seconds))
    logger.info("overdue sweep every %ss", settings.overdue_sweep_seconds)
  try:
    yield
  finally:
    if task:
      task.cancel()


app = FastAPI(title="AquaBill Backend", version="1.0.0", lifespan=lifespan)
app.add_middleware(
  CORSMiddleware,
  allow_origins=CORS_ORIGINS,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.include_router(billing_router)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
  log = logger.info if exc.status_code == 404 else logger.warning
  log("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.kind)
  return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.message})


@app.get("/health")
def health():
  return {
    "ok": True,
    "grace_period_days": settings.grace_period_days,
    "tax_percentage_bps": settings.tax_percentage_bps,
  }
