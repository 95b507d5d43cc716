import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, request, send_from_directory, abort
from flask import jsonify

from auth import Signer, now_ms, verify_timestamp
from db import init_db
from guard import RequestVerifier, require_signature, require_signature_with_body
from roll import roll_bp
from settings import SigningConfig, load_signing_config

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

BASE_DIR = Path(__file__).resolve().parent

CANDIDATES = [
    BASE_DIR / "frontend" / "dist",  # docker / after COPY
    BASE_DIR.parent / "frontend" / "dist",  # local dev: ../frontend/dist
]

NO_STORE = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
}


def find_frontend_dir():
    env_dir = os.getenv("FRONTEND_DIR")
    candidates = [Path(env_dir)] if env_dir else CANDIDATES
    for p in candidates:
        if (p / "index.html").exists():
            return p.resolve()
    return None


def create_app(config: SigningConfig | None = None, database_url: str | None = None, clock=None) -> Flask:
    """
    Builds the portal. A missing or weak API_SECRET / API_KEY raises ConfigurationError
    here, so a misconfigured process never starts serving.
    """
    config = (config or load_signing_config()).validate()
    clock = clock or now_ms

    frontend_dir = find_frontend_dir()
    if frontend_dir:
        logging.info(f"[STATIC] using frontend from: {frontend_dir}")
        app = Flask(__name__, static_folder=str(frontend_dir), static_url_path="/")
    else:
        logging.warning("[STATIC] index.html not found, serving the API only")
        app = Flask(__name__, static_folder=None)

    signer = Signer(config)
    app.extensions["request_verifier"] = RequestVerifier(config, signer, clock=clock)

    init_db(database_url)
    app.register_blueprint(roll_bp)

    @app.get("/")
    def _index():
        if not app.static_folder:
            abort(404)
        return send_from_directory(app.static_folder, "index.html")

    @app.post("/api/auth/sign")
    def auth_sign():
        """
        Same-origin signing endpoint: the browser never holds the secret, it asks for signatures.
        Body: { "payload": "<JSON {timestamp, nonce, apiKey, data}>" }
        """
        try:
            body = request.get_json(silent=True) or {}
            payload = body.get("payload") if isinstance(body, dict) else None
            if not payload or not isinstance(payload, str):
                return jsonify({"error": "Invalid payload format"}), 400

            try:
                payload_data = json.loads(payload)
            except ValueError:
                return jsonify({"error": "Payload must be valid JSON string"}), 400

            if not isinstance(payload_data, dict) or not (
                    payload_data.get("timestamp") and payload_data.get("nonce") and payload_data.get("apiKey")):
                return jsonify({"error": "Missing required fields: timestamp, nonce, apiKey"}), 400

            if payload_data["apiKey"] != config.api_key:
                logging.info("[sign] rejected: invalid API key")
                return jsonify({"error": "Invalid API key"}), 403

            if not verify_timestamp(payload_data["timestamp"], config.sign_max_age_ms, now=clock()):
                logging.info("[sign] rejected: stale or future timestamp")
                return jsonify({"error": "Timestamp expired or invalid"}), 400

            signature = signer.sign(payload)
            return jsonify({"signature": signature}), 200, NO_STORE
        except Exception:
            logging.exception("[sign] signing endpoint error")
            return jsonify({"error": "Internal server error"}), 500

    @app.get("/api/example/protected")
    @require_signature
    def example_protected_get():
        return jsonify({
            "success": True,
            "message": "This is a protected endpoint",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.post("/api/example/protected")
    @require_signature_with_body
    def example_protected_post(body):
        if not isinstance(body, dict) or not body.get("name") or not body.get("email"):
            return jsonify({"error": "Missing required fields: name, email"}), 400
        return jsonify({
            "success": True,
            "message": "Data received and processed securely",
            "receivedData": body,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    return app


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=int(os.getenv("PORT", "5000")), threaded=True)
