import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlmodel import Session, select

from db import make_engine
from errors import AppError
from job_store import JobStore, MonotonicMillis, clamp_limit
from mapping_store import MappingStore, normalize_page_url
from models import OgJob, UrlMapping


def make_job(job_id: str, created_at: int, **overrides) -> OgJob:
    fields = dict(
        id=job_id,
        source_type="base64",
        source_ref="base64-inline",
        title=f"Title {job_id}",
        subtitle=None,
        platform="og",
        template_id="gradient-bottom",
        output_path=f"/tmp/{job_id}.png",
        image_url=f"http://testserver/assets/og/{job_id}.png",
        width=1200,
        height=630,
        status="completed",
        error_message=None,
        created_at=created_at,
    )
    fields.update(overrides)
    return OgJob(**fields)


@pytest.fixture
def jobs(engine):
    return JobStore(engine)


@pytest.fixture
def mappings(engine):
    return MappingStore(engine)


def test_get_by_id_missing(jobs):
    assert jobs.get_by_id("nope") is None


def test_insert_and_get(jobs):
    jobs.insert(make_job("job1", 1_700_000_000_000, subtitle="Sub"))
    job = jobs.get_by_id("job1")
    assert job.title == "Title job1"
    assert job.subtitle == "Sub"
    assert job.mapped_page_url is None


def test_pagination_with_cursor(jobs):
    for i in range(11):
        jobs.insert(make_job(f"job{i:02d}", 1_000 + i))

    first = jobs.list(limit=10)
    assert [j.id for j in first.items] == [f"job{i:02d}" for i in range(10, 0, -1)]
    assert first.next_cursor == "1001"

    second = jobs.list(limit=10, cursor=first.next_cursor)
    assert [j.id for j in second.items] == ["job00"]
    assert second.next_cursor is None


def test_cursor_is_stable_under_newer_inserts(jobs):
    for i in range(5):
        jobs.insert(make_job(f"old{i}", 100 + i))
    page = jobs.list(limit=2)
    jobs.insert(make_job("newer", 10_000))

    rest = jobs.list(limit=10, cursor=page.next_cursor)
    assert [j.id for j in rest.items] == ["old2", "old1", "old0"]


def test_exact_page_has_no_cursor(jobs):
    for i in range(3):
        jobs.insert(make_job(f"j{i}", 10 + i))
    page = jobs.list(limit=3)
    assert len(page.items) == 3
    assert page.next_cursor is None


def test_limit_is_clamped(jobs):
    assert clamp_limit(None) == 20
    assert clamp_limit(0) == 1
    assert clamp_limit(500) == 100
    for i in range(3):
        jobs.insert(make_job(f"j{i}", 10 + i))
    assert len(jobs.list(limit=0).items) == 1


def test_invalid_cursor(jobs):
    with pytest.raises(AppError) as exc:
        jobs.list(cursor="yesterday")
    assert exc.value.code == "INVALID_CURSOR"


def test_created_at_clock_is_strictly_increasing():
    clock = MonotonicMillis(clock=lambda: 1.0)
    assert [clock(), clock(), clock()] == [1000, 1001, 1002]


def test_clock_is_seeded_from_newest_row(engine):
    JobStore(engine).insert(make_job("future", 99_999_999_999_999))
    assert JobStore(engine).next_created_at() == 100_000_000_000_000


def test_job_survives_restart(app_settings):
    url = app_settings.resolved_database_url
    first_engine = make_engine(url)
    original = make_job("persist", 1_700_000_000_123, subtitle="kept")
    JobStore(first_engine).insert(original)
    MappingStore(first_engine).bind("https://example.com/post", "persist", original.image_url)
    first_engine.dispose()

    second_engine = make_engine(url)
    reloaded = JobStore(second_engine).get_by_id("persist")
    second_engine.dispose()

    assert reloaded.model_dump(exclude={"mapped_page_url"}) == original.model_dump()
    assert reloaded.mapped_page_url == "https://example.com/post"


# ---------- mappings ----------

def test_normalize_strips_fragment_and_canonicalizes():
    assert normalize_page_url("https://x/y#a") == normalize_page_url("https://x/y#b") == "https://x/y"
    assert normalize_page_url("HTTPS://Example.COM/path?q=1#frag") == "https://example.com/path?q=1"


def test_normalize_adds_root_path_to_bare_origins():
    assert normalize_page_url("https://example.com") == normalize_page_url("https://example.com/") \
        == "https://example.com/"
    assert normalize_page_url("https://example.com?x=1") == normalize_page_url("https://example.com/?x=1") \
        == "https://example.com/?x=1"
    assert normalize_page_url("https://example.com#top") == "https://example.com/"
    assert normalize_page_url("https://example.com/a") == "https://example.com/a"


@pytest.mark.parametrize("raw", ["", "not a url", "ftp://example.com/file", "mailto:a@b.c", "https://"])
def test_normalize_rejects_invalid(raw):
    with pytest.raises(AppError) as exc:
        normalize_page_url(raw)
    assert exc.value.code == "INVALID_PAGE_URL"
    assert exc.value.status_code == 400


def test_bind_is_last_write_wins(engine, jobs, mappings):
    jobs.insert(make_job("first", 1))
    jobs.insert(make_job("second", 2))

    mappings.bind("https://example.com/page", "first", "http://img/first.png")
    latest = mappings.bind("https://example.com/page", "second", "http://img/second.png")

    with Session(engine) as session:
        rows = session.exec(select(UrlMapping)).all()
    assert len(rows) == 1
    assert rows[0].job_id == "second"
    assert latest.image_url == "http://img/second.png"
    assert mappings.lookup("https://example.com/page").job_id == "second"


def test_fragment_variants_share_one_mapping(jobs, mappings):
    jobs.insert(make_job("job", 1))
    mappings.bind("https://x/y#a", "job", "http://img/job.png")
    found = mappings.lookup("https://x/y#b")
    assert found.page_url == "https://x/y"
    assert found.job_id == "job"


def test_lookup_missing(mappings):
    assert mappings.lookup("https://example.com/unknown") is None


def test_job_reports_most_recent_binding(jobs, mappings):
    jobs.insert(make_job("job", 1))
    mappings.bind("https://example.com/a", "job", "http://img/job.png")
    mappings.bind("https://example.com/b", "job", "http://img/job.png")

    assert jobs.get_by_id("job").mapped_page_url == "https://example.com/b"
    assert jobs.list().items[0].mapped_page_url == "https://example.com/b"


def test_rebinding_moves_page_to_new_job(jobs, mappings):
    jobs.insert(make_job("a", 1))
    jobs.insert(make_job("b", 2))
    mappings.bind("https://example.com/p", "a", "http://img/a.png")
    mappings.bind("https://example.com/p", "b", "http://img/b.png")

    assert jobs.get_by_id("a").mapped_page_url is None
    assert jobs.get_by_id("b").mapped_page_url == "https://example.com/p"


def test_bare_origin_variants_share_one_mapping(jobs, mappings):
    jobs.insert(make_job("a", 1))
    jobs.insert(make_job("b", 2))
    mappings.bind("https://example.com", "a", "http://img/a.png")
    mappings.bind("https://example.com/", "b", "http://img/b.png")

    assert mappings.lookup("https://example.com").job_id == "b"
    assert jobs.get_by_id("a").mapped_page_url is None


def test_mapping_clock_is_seeded_from_newest_row(engine, jobs):
    jobs.insert(make_job("job", 1))
    MappingStore(engine).bind("https://example.com/old", "job", "http://img/job.png")
    with Session(engine) as session:
        row = session.get(UrlMapping, "https://example.com/old")
        row.updated_at = 99_999_999_999_999
        session.add(row)
        session.commit()

    restarted = MappingStore(engine)
    fresh = restarted.bind("https://example.com/new", "job", "http://img/job.png")
    assert fresh.updated_at == 100_000_000_000_000
    assert jobs.get_by_id("job").mapped_page_url == "https://example.com/new"


def test_concurrent_binds_leave_a_single_row(engine, jobs, mappings):
    job_ids = [f"job{i}" for i in range(8)]
    for i, job_id in enumerate(job_ids):
        jobs.insert(make_job(job_id, i + 1))

    barrier = threading.Barrier(len(job_ids))

    def bind(job_id):
        barrier.wait()
        return mappings.bind("https://example.com/contested", job_id, f"http://img/{job_id}.png")

    with ThreadPoolExecutor(max_workers=len(job_ids)) as pool:
        results = list(pool.map(bind, job_ids))

    with Session(engine) as session:
        rows = session.exec(select(UrlMapping)).all()
    assert len(rows) == 1
    newest = max(results, key=lambda m: m.updated_at)
    assert rows[0].job_id == newest.job_id
    assert rows[0].updated_at == newest.updated_at
