"""chatstream: Entry point."""
import argparse
import uvicorn
import logging
import os
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)


def _wipe_db(db_path: str):
    """Delete the SQLite file (and its journal files) for a clean start."""
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm", f"{db_path}-journal"):
        if os.path.exists(path):
            os.remove(path)
            print(f"[chatstream] Deleted {path}")


def main():
    parser = argparse.ArgumentParser(description="chatstream conversation server")
    parser.add_argument(
        "--reset-db",
        action="store_true",
        help="Delete the conversation database before starting",
    )
    args = parser.parse_args()

    config_path = os.environ.get("CHATSTREAM_CONFIG", "config.yaml")
    if not os.path.exists(config_path):
        example = "config.example.yaml"
        if os.path.exists(example):
            print(f"[chatstream] {config_path} not found. Copy from {example}:")
            print(f"  cp {example} {config_path}")
        else:
            print(f"[chatstream] {config_path} not found.")
        sys.exit(1)

    from chatstream.config import load_config
    config = load_config(config_path)

    # Wipe DB if requested (before any async DB connections)
    if args.reset_db:
        print("[chatstream] --reset-db: wiping conversation database...")
        _wipe_db(config.storage.db_path)

    print(f"[chatstream] Starting server on {config.server.host}:{config.server.port}")
    print(f"[chatstream] Completion model: {config.models.completion}")
    print(
        f"[chatstream] Token budget: context={config.token_budget.context_window} "
        f"response={config.token_budget.max_response_tokens}"
    )

    uvicorn.run(
        "chatstream.server:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
        log_level="info"
    )

if __name__ == "__main__":
    main()
