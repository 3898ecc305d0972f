from __future__ import annotations
import os
from app import create_app
from app.extensions import db


def main() -> None:
    flask_app = create_app()

    if os.environ.get("AUTO_CREATE_TABLES", "0") in {"1", "true", "True"}:
        with flask_app.app_context():
            db.create_all()

    # booking and payment endpoints, handy when wiring the webhook
    print("\n=== BOOKING ENGINE ROUTES ===")
    for rule in sorted(flask_app.url_map.iter_rules(), key=lambda r: r.rule):
        if rule.endpoint == "static":
            continue
        methods = ",".join(sorted(rule.methods - {"HEAD", "OPTIONS"}))
        print(f"{methods:<12} {rule.rule}")
    print("=============================\n")

    if not flask_app.config.get("STRIPE_WEBHOOK_SECRET"):
        flask_app.logger.warning("STRIPE_WEBHOOK_SECRET is not set; /payments/webhook will answer 502")

    debug_enabled = os.environ.get("FLASK_DEBUG", "0") in {"1", "true", "True"}
    flask_app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=debug_enabled)


if __name__ == "__main__":
    main()
