"""python -m chat_gateway：用 uvicorn 启动网关。"""

import uvicorn

from chat_gateway.api.app import create_app
from chat_gateway.config.settings import settings
from chat_gateway.infrastructure.logging.logger import logger


def main() -> None:
    app = create_app(settings)
    logger.info(f"[server] listening on http://localhost:{settings.port}")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
