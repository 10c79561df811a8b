"""Command line entry for serving the listings API."""

import os

import uvicorn


def main() -> None:
    """Run the FastAPI app with uvicorn."""
    uvicorn.run(
        "server.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("UVICORN_RELOAD", "").lower() in {"1", "true"},
    )


if __name__ == "__main__":
    main()
