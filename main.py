"""
main.py - Server launcher and entry point.

Run this file to start the booking API and open the interactive docs:

    python main.py

The docs will open at http://127.0.0.1:8000/docs

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage (without browser auto-open):
    uvicorn app:app --reload
"""

from __future__ import annotations

import threading
import time
import webbrowser

import uvicorn


HOST = "127.0.0.1"
PORT = 8000
DOCS_URL = f"http://{HOST}:{PORT}/docs"


def _open_docs_after_startup(delay_seconds: float = 2.0) -> None:
    """Open the API docs once uvicorn has had time to run the startup sequence."""
    time.sleep(delay_seconds)
    print(f"\n  Opening API docs → {DOCS_URL}\n")
    webbrowser.open(DOCS_URL)


def main() -> None:
    """Start the booking server and open the API docs."""
    print("=" * 60)
    print("  Booking Core - scheduling & allocation API")
    print("=" * 60)
    print(f"  Server  : http://{HOST}:{PORT}")
    print(f"  API docs: {DOCS_URL}")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    docs_thread = threading.Thread(
        target=_open_docs_after_startup,
        daemon=True,
    )
    docs_thread.start()

    # Blocks until CTRL+C
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=True,
        log_level="info",
    )


if __name__ == "__main__":
    main()
