"""
Run the control plane:

    python -m handsfree            # 0.0.0.0:8000
    HANDSFREE_PORT=9000 python -m handsfree
"""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "handsfree.server:app",
        host=os.getenv("HANDSFREE_HOST", "0.0.0.0"),
        port=int(os.getenv("HANDSFREE_PORT", "8000")),
        log_level="debug" if os.getenv("HANDSFREE_DEBUG") else "info",
    )


if __name__ == "__main__":
    main()
