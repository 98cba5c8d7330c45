import json
import os
import time
from io import StringIO
from pathlib import Path
from uuid import uuid4

import pytest
from django.core.management import call_command

from videos.models import Job
from videos.orchestrator import Orchestrator
from videos.tasks import process_job, sweep_claimable
from videos.transcoder import Transcoder
from videos.worker import run_once, worker_token

pytestmark = pytest.mark.django_db

S = Job.Status


def test_worker_token_identifies_host_process_and_thread():
    token = worker_token("worker-2")
    host, pid, name = token.split(":")
    assert host
    assert pid == str(os.getpid())
    assert name == "worker-2"


def test_run_once_drives_a_pending_job(store, notifier, fake_s3, encoder, make_job):
    job_id = make_job()
    orch = Orchestrator("worker-1", store=store, notifier=notifier,
                        transcoder=Transcoder(poll_interval=0), sleep=lambda s: None)

    assert run_once(orch, store) is True
    assert store.get(job_id).status == S.PUBLISHED
    assert run_once(orch, store) is False


def test_run_once_skips_jobs_it_cannot_win(store, notifier, fake_s3, encoder, make_job):
    job_id = make_job()
    store.claim(job_id, "someone-else")
    orch = Orchestrator("worker-1", store=store, notifier=notifier,
                        transcoder=Transcoder(poll_interval=0), sleep=lambda s: None)
    assert run_once(orch, store) is False
    assert encoder.calls == []


def test_process_job_task(fake_s3, encoder, make_job):
    job_id = make_job()
    result = process_job.apply(args=[job_id])
    assert result.get() == S.PUBLISHED


def test_sweep_dispatches_claimable_jobs(store, make_job, monkeypatch):
    dispatched = []
    monkeypatch.setattr("videos.tasks.process_job.delay", lambda job_id: dispatched.append(job_id))
    first = make_job("a.mp4")
    second = make_job("b.mp4")
    busy = make_job("c.mp4")
    store.claim(busy, "w1")

    assert sweep_claimable(limit=10) == 2
    assert sorted(dispatched) == sorted([first, second])


def test_storage_stats_command(fake_s3):
    fake_s3.objects.update({
        "videos/صدمة/a/index.m3u8": b"#EXTM3U",
        "videos/صدمة/a/seg_000.ts": b"x" * 100,
        "videos/general/b/index.m3u8": b"#EXTM3U",
        "uploads/raw.mp4": b"y" * 1000,
    })
    out = StringIO()
    call_command("storage_stats", "--json", stdout=out)
    assert json.loads(out.getvalue()) == {"videos": 2, "bytes": 114}

    out = StringIO()
    call_command("storage_stats", stdout=out)
    assert "Videos: 2" in out.getvalue()


def test_finished_jobs_are_released_when_records_are_deleted(store, notifier, fake_s3, encoder, make_job):
    job_ids = [make_job(f"clip{i}.mp4") for i in range(3)]
    orch = Orchestrator("worker-1", store=store, notifier=notifier,
                        transcoder=Transcoder(poll_interval=0), sleep=lambda s: None)
    while run_once(orch, store):
        pass
    assert all(notifier.last_event(j).status == S.PUBLISHED for j in job_ids)

    for job_id in job_ids:
        store.delete(job_id)

    assert all(notifier.last_event(j) is None for j in job_ids)


def test_sweep_removes_old_work_dirs_of_finished_or_deleted_jobs(store, make_job, monkeypatch, settings):
    monkeypatch.setattr("videos.tasks.process_job.delay", lambda job_id: None)
    root = Path(settings.WORK_ROOT)
    pending = make_job("a.mp4")
    failed = make_job("b.mp4")
    store.update_status(failed, S.PENDING, S.ERROR, error_reason="bad")
    an_hour_ago = time.time() - 3600

    dirs = {
        "pending": root / f"{pending}-aaaa1111",
        "failed": root / f"{failed}-bbbb2222",
        "deleted": root / f"{uuid4()}-cccc3333",
        "fresh": root / f"{uuid4()}-dddd4444",
    }
    for name, path in dirs.items():
        path.mkdir(parents=True)
        if name != "fresh":
            os.utime(path, (an_hour_ago, an_hour_ago))

    sweep_claimable(limit=10)

    assert dirs["pending"].exists()
    assert dirs["fresh"].exists()
    assert not dirs["failed"].exists()
    assert not dirs["deleted"].exists()


def test_celery_limits_cover_the_retry_budget(settings):
    from cloudstream.celery import celery_app

    worst_case = settings.PIPELINE_MAX_ATTEMPTS * (
        settings.TRANSCODE_TIMEOUT_SECONDS + settings.UPLOAD_TIMEOUT_SECONDS
    )
    assert settings.CELERY_TASK_SOFT_TIME_LIMIT >= worst_case
    assert settings.CELERY_TASK_TIME_LIMIT > settings.CELERY_TASK_SOFT_TIME_LIMIT
    assert celery_app.conf.task_soft_time_limit == settings.CELERY_TASK_SOFT_TIME_LIMIT
    assert celery_app.conf.task_time_limit == settings.CELERY_TASK_TIME_LIMIT
