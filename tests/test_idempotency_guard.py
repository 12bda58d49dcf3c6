from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from pathlib import Path

import pytest

from booking_jobs.jobs.idempotency import APPLIED, CLAIMED, IdempotencyGuard


def test_claim_is_exclusive_until_released(tmp_path: Path) -> None:
    g = IdempotencyGuard(tmp_path / "idem.db")
    assert g.claim("booking_creation", "k1", job_id="a") is True
    assert g.claim("booking_creation", "k1", job_id="b") is False
    assert g.state("booking_creation", "k1") == CLAIMED

    g.release("booking_creation", "k1", job_id="a")
    assert g.state("booking_creation", "k1") is None
    assert g.claim("booking_creation", "k1", job_id="b") is True


def test_completed_key_is_a_permanent_duplicate(tmp_path: Path) -> None:
    g = IdempotencyGuard(tmp_path / "idem.db")
    assert g.claim("webhook", "webhook:42") is True
    g.complete("webhook", "webhook:42")
    assert g.state("webhook", "webhook:42") == APPLIED

    # release() never forgets an applied key
    g.release("webhook", "webhook:42")
    assert g.claim("webhook", "webhook:42") is False


def test_scopes_are_independent(tmp_path: Path) -> None:
    g = IdempotencyGuard(tmp_path / "idem.db")
    assert g.claim("webhook", "same") is True
    assert g.claim("booking_creation", "same") is True


def test_release_only_drops_own_claim(tmp_path: Path) -> None:
    g = IdempotencyGuard(tmp_path / "idem.db")
    assert g.claim("booking_creation", "k1", job_id="owner") is True
    g.release("booking_creation", "k1", job_id="someone-else")
    assert g.state("booking_creation", "k1") == CLAIMED


def test_stale_claim_can_be_taken_over(tmp_path: Path) -> None:
    db = tmp_path / "idem.db"
    g = IdempotencyGuard(db, claim_ttl_sec=5)
    assert g.claim("booking_creation", "k1", job_id="dead-worker") is True
    assert g.claim("booking_creation", "k1", job_id="next") is False

    with closing(sqlite3.connect(str(db))) as con, con:
        con.execute("UPDATE idempotency_keys SET claimed_at = claimed_at - 60")

    assert g.claim("booking_creation", "k1", job_id="next") is True
    # the takeover itself refreshed the claim
    assert g.claim("booking_creation", "k1", job_id="third") is False


def test_empty_key_rejected(tmp_path: Path) -> None:
    g = IdempotencyGuard(tmp_path / "idem.db")
    with pytest.raises(ValueError):
        g.claim("booking_creation", "")


def test_concurrent_claims_have_one_winner(tmp_path: Path) -> None:
    db = tmp_path / "idem.db"
    g = IdempotencyGuard(db)

    def _claim(i: int) -> bool:
        # one connection per call, same as separate worker processes sharing the file
        return g.claim("booking_creation", "race", job_id=str(i))

    with ThreadPoolExecutor(max_workers=8) as ex:
        results = list(ex.map(_claim, range(16)))
    assert results.count(True) == 1


def test_purge_forgets_old_applied_keys_only(tmp_path: Path) -> None:
    db = tmp_path / "idem.db"
    g = IdempotencyGuard(db)
    for k in ("old", "fresh", "inflight"):
        assert g.claim("webhook", k) is True
    g.complete("webhook", "old")
    g.complete("webhook", "fresh")
    with closing(sqlite3.connect(str(db))) as con, con:
        con.execute("UPDATE idempotency_keys SET applied_at = applied_at - 1000 WHERE key = 'old'")

    assert g.purge(older_than_sec=500) == 1
    assert g.state("webhook", "old") is None
    assert g.state("webhook", "fresh") == APPLIED
    assert g.state("webhook", "inflight") == CLAIMED


def test_holder_can_claim_its_key_again(tmp_path: Path) -> None:
    g = IdempotencyGuard(tmp_path / "idem.db")
    assert g.claim("booking_creation", "k1", job_id="job-1") is True
    # redelivery of the same job after its consumer died
    assert g.claim("booking_creation", "k1", job_id="job-1") is True
    assert g.claim("booking_creation", "k1", job_id="job-2") is False

    g.complete("booking_creation", "k1")
    assert g.claim("booking_creation", "k1", job_id="job-1") is False
    assert g.state("booking_creation", "k1") == APPLIED
