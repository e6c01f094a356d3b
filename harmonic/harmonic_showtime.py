"""
Harmonic Memory — shared backend (Flask entrypoint)
"""
import sys
import logging
from flask import Flask

from harmonic.api.routes import init_routes
from harmonic.config import Settings


def create_app(settings: Settings = None, **backend) -> Flask:
    app = Flask(__name__)
    init_routes(app, settings or Settings.from_env(), **backend)
    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = Settings.from_env()
    port = settings.port
    if "--port" in sys.argv:
        try:
            i = sys.argv.index("--port")
            port = int(sys.argv[i+1])
        except (IndexError, ValueError):
            logging.warning("ignoring bad --port, using %s", port)
    app = create_app(settings)
    print(f"[Harmonic] running at http://0.0.0.0:{port}")
    print("  GET    /api/harmonic-memory  - recent entries")
    print("  POST   /api/harmonic-memory  - add entry")
    print("  DELETE /api/harmonic-memory  - clear all entries")
    print("  GET    /api/stream/<topic>   - live events (SSE)")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
