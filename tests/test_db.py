import pytest

from conftest import fake_detector, make_image
from mediavariants import assets, bulk, db
from mediavariants import config as app_config
from mediavariants.conversion.models import JobState
from mediavariants.conversion.service import ConversionService
from mediavariants.dispatch import JobDispatcher


def test_meta_round_trip():
    assert db.get_meta("a1", "converted_formats") is None
    assert db.set_meta("a1", "converted_formats", ["webp"])
    assert db.set_meta("a1", "converted_formats", ["webp", "avif"])
    assert db.get_meta("a1", "converted_formats") == ["webp", "avif"]
    assert db.get_all_meta("a1") == {"converted_formats": ["webp", "avif"]}
    assert db.delete_meta("a1", "converted_formats")
    assert db.get_meta("a1", "converted_formats") is None


def test_claim_job_state(image_asset):
    blocked = ["queued", "processing"]
    assert db.claim_job_state(image_asset.asset_id, "queued", blocked)
    assert not db.claim_job_state(image_asset.asset_id, "processing", blocked)
    assert db.get_job_state(image_asset.asset_id) == "queued"


def test_reset_job_states_only_touches_listed_states(image_asset, video_asset):
    db.set_job_state(image_asset.asset_id, "processing")
    db.set_job_state(video_asset.asset_id, "completed")

    assert db.reset_job_states(["queued", "processing"], "none") == 1

    assert db.get_job_state(image_asset.asset_id) == "none"
    assert db.get_job_state(video_asset.asset_id) == "completed"


def test_unconverted_assets_skip_converted_and_disabled(image_asset, video_asset, tmp_path):
    third = assets.create_asset(make_image(tmp_path / "uploads" / "c.jpg"), "c.jpg")
    db.set_meta(image_asset.asset_id, "conversion_date", "2024-01-01T00:00:00+00:00")
    db.set_meta(video_asset.asset_id, "conversion_disabled", True)

    assert bulk.get_unconverted_assets(10) == [third.asset_id]


def test_bulk_counts_failures(image_asset, video_asset, orchestrator, settings, store, tracker):
    settings.video_formats = []
    svc = ConversionService(
        store=store, tracker=tracker, detector=fake_detector(),
        orchestrator=orchestrator, dispatcher=JobDispatcher(max_workers=1),
    )
    try:
        counts = bulk.process_batch(10, service=svc)
    finally:
        svc.shutdown()

    assert counts == {"processed": 2, "converted": 1, "errors": 1}
    assert store.get_job_state(video_asset.asset_id) is JobState.FAILED


def test_init_db_falls_back_to_sqlite(monkeypatch, tmp_path):
    pytest.importorskip("pymysql")
    monkeypatch.setattr(app_config, "BASE_DIR", tmp_path)
    monkeypatch.setattr(app_config, "DATABASE_URL", "mysql+pymysql://user:pw@127.0.0.1:1/variants")
    db.dispose_engine()

    db.init_db()

    assert db.is_sqlite()
    assert (tmp_path / "data" / "mediavariants.db").exists()
    assert db.get_options() == {}
