"""Run the webhook service: ``python -m quote_webhooks``."""

from __future__ import annotations

import logging
import os

from quote_webhooks.config import get_settings


def main() -> None:
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("PORT", "8060"))
    uvicorn.run("quote_webhooks.app:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
