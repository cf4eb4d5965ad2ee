"""
Server entrypoint: python -m chatdash
"""
import os
import sys


def main() -> None:
    import uvicorn

    try:
        uvicorn.run(
            "chatdash.main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[chatdash] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
