"""Entry point: ``uvicorn main:app`` or ``python main.py``."""

from __future__ import annotations

import os

from crp.api import app  # noqa: F401


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("crp.api:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
