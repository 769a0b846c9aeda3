"""
Tests for PersistenceGateway.
"""

import json
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from src.core.errors import PersistError
from src.monitoring.baseline import BaselineStore
from src.monitoring.models import BaselineStats
from src.monitoring.persistence import SCHEMA_VERSION, PersistenceGateway

LEARNED_AT = datetime(2025, 10, 2, 12, 5, 0, tzinfo=UTC)


@pytest.fixture
def store():
    return BaselineStore.from_stats(
        {
            "cpu": BaselineStats(
                mean=12.5, stddev=1.5, sample_count=60, learned_at=LEARNED_AT, is_learned=True
            ),
            "host:8.8.8.8": BaselineStats(mean=18.0, stddev=0.0, sample_count=3),
        },
        feedback={"cpu-97"},
    )


class TestPersistenceGateway:
    """Tests for PersistenceGateway class."""

    def test_save_and_load(self, tmp_path, store):
        """A saved store loads back with the same statistics and feedback."""
        gateway = PersistenceGateway(tmp_path / "baseline.json")
        gateway.save(store)

        loaded = gateway.load()

        cpu = loaded.to_stats()["cpu"]
        assert cpu.mean == 12.5
        assert cpu.stddev == pytest.approx(1.5)
        assert cpu.sample_count == 60
        assert cpu.is_learned
        assert cpu.learned_at == LEARNED_AT
        assert not loaded.is_learned("host:8.8.8.8")
        assert loaded.feedback == {"cpu-97"}

    def test_document_format(self, tmp_path, store):
        path = tmp_path / "baseline.json"
        PersistenceGateway(path).save(store)

        document = json.loads(path.read_text())

        assert document["version"] == SCHEMA_VERSION
        assert document["feedback"] == ["cpu-97"]
        assert set(document["baseline"]) == {"cpu", "host:8.8.8.8"}

    def test_save_creates_directory_and_leaves_no_temp_files(self, tmp_path, store):
        path = tmp_path / "data" / "baseline.json"
        PersistenceGateway(path).save(store)

        assert [p.name for p in path.parent.iterdir()] == ["baseline.json"]

    def test_missing_file_gives_fresh_store(self, tmp_path):
        loaded = PersistenceGateway(tmp_path / "absent.json").load()

        assert len(loaded) == 0
        assert loaded.feedback == set()

    @pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]", '{"baseline": []}'])
    def test_corrupt_file_gives_fresh_store(self, tmp_path, content):
        """Corrupt content is never fatal."""
        path = tmp_path / "baseline.json"
        path.write_text(content)

        assert len(PersistenceGateway(path).load()) == 0

    @pytest.mark.parametrize(
        "content", [b"\xff\xfe", b'{"version": 2, "baseline": {"\xff\xfe": 1}}']
    )
    def test_undecodable_file_gives_fresh_store(self, tmp_path, content):
        path = tmp_path / "baseline.json"
        path.write_bytes(content)

        loaded = PersistenceGateway(path).load()

        assert len(loaded) == 0
        assert loaded.feedback == set()

    def test_invalid_entries_dropped(self, tmp_path):
        """Entries violating invariants are dropped, valid ones kept."""
        path = tmp_path / "baseline.json"
        path.write_text(
            json.dumps(
                {
                    "version": 2,
                    "baseline": {
                        "cpu": {"mean": 10.0, "stddev": -1.0, "sample_count": 5},
                        "ram": {"mean": 40.0, "stddev": 2.0, "sample_count": 5, "is_learned": True},
                        "disk": "garbage",
                    },
                }
            )
        )

        loaded = PersistenceGateway(path).load()

        assert set(loaded.baselines) == {"ram"}

    def test_version_one_document(self, tmp_path):
        """Version 1 documents ("std", feedback map) are still readable."""
        path = tmp_path / "baseline.json"
        path.write_text(
            json.dumps(
                {
                    "baseline": {"cpu": {"mean": 20.0, "std": 3.0, "sample_count": 100}},
                    "feedback": {"cpu-97": True, "ram-50": False},
                }
            )
        )

        loaded = PersistenceGateway(path).load()

        assert loaded.is_learned("cpu")
        assert loaded.to_stats()["cpu"].stddev == pytest.approx(3.0)
        assert loaded.feedback == {"cpu-97"}

    def test_save_failure_raises_and_keeps_previous(self, tmp_path, store):
        """A failed save leaves the previous document untouched."""
        path = tmp_path / "baseline.json"
        gateway = PersistenceGateway(path)
        gateway.save(store)
        before = path.read_text()

        with patch("src.monitoring.persistence.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistError, match="disk full"):
                gateway.save(BaselineStore())

        assert path.read_text() == before
        assert [p.name for p in tmp_path.iterdir()] == ["baseline.json"]

    def test_unreadable_file_raises(self, tmp_path):
        """Read errors other than a missing file are reported."""
        directory = tmp_path / "baseline.json"
        directory.mkdir()

        with pytest.raises(PersistError):
            PersistenceGateway(directory).load()
