from datetime import timedelta

from celery.schedules import crontab

from tutorflow.tasks.beat_schedule import CELERYBEAT_SCHEDULE, get_beat_schedule
from tutorflow.tasks.celery_app import celery_app


def test_schedule_covers_every_periodic_job():
    tasks = {entry["task"] for entry in get_beat_schedule().values()}

    assert tasks == {
        "lifecycle.expire_class_requests",
        "lifecycle.advance_class_statuses",
        "outbox.dispatch_pending",
    }
    assert get_beat_schedule()["dispatch-outbox"]["schedule"] == timedelta(seconds=30)


def test_development_runs_sweeps_every_minute():
    schedule = get_beat_schedule("development")

    assert schedule["expire-class-requests"]["schedule"] == crontab(minute="*/1")
    assert schedule["advance-class-statuses"]["schedule"] == crontab(minute="*/1")
    assert CELERYBEAT_SCHEDULE["advance-class-statuses"]["schedule"] == crontab(minute="*/5")


def test_tasks_are_registered_on_their_queues():
    routes = celery_app.conf.task_routes

    assert routes["lifecycle.*"] == {"queue": "lifecycle"}
    assert routes["outbox.*"] == {"queue": "notifications"}
    assert "tutorflow.tasks.lifecycle_tasks" in celery_app.conf.imports
