#!/usr/bin/env python3
# backend/run_celery_worker.py
"""
Local Celery worker for the lifecycle sweeps and outbox delivery.
"""
import os
from pathlib import Path
import subprocess
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("ENVIRONMENT", "development")

if __name__ == "__main__":
    queues = os.getenv("CELERY_QUEUES") or "lifecycle,notifications"
    print(f"Starting Celery worker (ENVIRONMENT={os.environ['ENVIRONMENT']}) on queues: {queues}")

    cmd = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "tutorflow.tasks.celery_app",
        "worker",
        "--loglevel=info",
        "--concurrency=2",
        "--max-tasks-per-child=100",
        "--pool=prefork",
        "-Q",
        queues,
    ]

    subprocess.run(cmd)
