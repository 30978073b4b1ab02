"""Standalone FastAPI server entry point.

Run with: python run.py
"""
import logging
import uvicorn

from drawqueue.core.config import load_settings

settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

if __name__ == "__main__":
    uvicorn.run(
        "drawqueue.fastapi_app:app",
        host=settings.host,
        port=settings.port,
    )
