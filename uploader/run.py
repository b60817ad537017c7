#!/usr/bin/env python3
"""Run the GitHub Uploader application"""
import uvicorn

from uploader.core.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "uploader.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
