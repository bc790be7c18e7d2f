#!/usr/bin/env python3
# backend/run_celery_beat.py
"""
Local Celery beat: triggers request expiry, class status progression and
outbox dispatch on the schedule in tutorflow.tasks.beat_schedule.
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
    print(f"Starting Celery beat (ENVIRONMENT={os.environ['ENVIRONMENT']})")

    cmd = [sys.executable, "-m", "celery", "-A", "tutorflow.tasks.celery_app", "beat", "--loglevel=info"]

    subprocess.run(cmd)
