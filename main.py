"""HTTP entry point: ``uvicorn main:app`` (or ``python main.py``).

Configuration comes from PDC_* environment variables, see pdc/settings.py.
"""
from __future__ import annotations

import os

from pdc.api import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("PDC_HOST", "0.0.0.0"), port=int(os.getenv("PDC_PORT", "8000")))
