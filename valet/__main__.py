"""
Run the valet operations API with uvicorn.

Example:
  python -m valet
"""
import os

import uvicorn

from valet.logging import setup_json_logging


def main() -> None:
    setup_json_logging()
    uvicorn.run(
        "valet.api:create_app",
        factory=True,
        host=os.getenv("VALET_HOST", "0.0.0.0"),
        port=int(os.getenv("VALET_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
