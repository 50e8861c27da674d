import logging

from fastapi import FastAPI

import config
from db import create_db_and_tables
from errors import setup_exception_handlers
from routers import auth, categories, chat, items, notifications, requests, users

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title="Gudang Mitra")

setup_exception_handlers(app)


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(auth.router, prefix="/auth")
app.include_router(users.router, prefix="/users")
app.include_router(categories.router, prefix="/categories")
app.include_router(items.router, prefix="/items")
app.include_router(requests.router, prefix="/requests")
app.include_router(notifications.router, prefix="/notifications")
app.include_router(chat.router, prefix="/chat")
