from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("CALSYNC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("CALSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("CALSYNC_PORT", "8080"))
    uvicorn.run("calsync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
