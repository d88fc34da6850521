import os
from datetime import datetime

import uvicorn
from dotenv import load_dotenv

load_dotenv()

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8002))
LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def build_log_config(log_path: str) -> dict:
    """Uvicorn dictConfig: every logger writes to the console and to ``log_path``."""
    console_and_file = {"handlers": ["console", "file"], "level": LOG_LEVEL, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(asctime)s - %(levelprefix)s %(name)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": None,
            },
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": '%(asctime)s - %(levelprefix)s %(client_addr)s - "%(request_line)s" %(status_code)s',
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": None,
            },
            "plain": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "console",
                "stream": "ext://sys.stdout",
            },
            "access_console": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": "ext://sys.stdout",
            },
            "file": {
                "class": "logging.FileHandler",
                "formatter": "plain",
                "filename": log_path,
                "encoding": "utf-8",
            },
        },
        "loggers": {
            "app": console_and_file,
            "apscheduler": console_and_file,
            "uvicorn": console_and_file,
            "uvicorn.error": console_and_file,
            "uvicorn.access": {"handlers": ["access_console", "file"], "level": LOG_LEVEL, "propagate": False},
        },
    }


if __name__ == "__main__":
    os.makedirs(LOG_DIR, exist_ok=True)
    log_path = os.path.join(LOG_DIR, f"club_gym_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log")

    print("=" * 60)
    print(f"Club Gym API starting on {HOST}:{PORT}")
    print(f"Log file: {log_path}")
    print("=" * 60)

    uvicorn.run(
        "main:app",
        host=HOST,
        port=PORT,
        workers=1,
        log_config=build_log_config(log_path),
        access_log=True,
    )
