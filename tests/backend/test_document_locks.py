from datetime import timedelta
from uuid import uuid4

import pytest

from src.clinical_docs.domain.errors import DocumentNotFound, InvalidStateTransition, LockConflict
from src.clinical_docs.domain.models.document_lock import DocumentLock


def test_lock_is_exclusive_until_stale(service, draft, clock):
    assert service.lock_document(draft.id, "doctor-a") is True
    assert service.lock_document(draft.id, "doctor-b") is False

    # Exactly thirty minutes is not yet stale.
    clock.advance(minutes=30)
    assert service.lock_document(draft.id, "doctor-b") is False

    clock.advance(seconds=1)
    assert service.lock_document(draft.id, "doctor-b") is True

    lock = service.get_document(draft.id, "doctor-b").lock
    assert lock.locked_by == "doctor-b"
    assert lock.locked_at == clock.now


def test_reacquire_refreshes_own_lock(service, draft, clock):
    service.lock_document(draft.id, "doctor-a")
    clock.advance(minutes=20)
    assert service.lock_document(draft.id, "doctor-a") is True

    # The refreshed lock is measured from the second acquire.
    clock.advance(minutes=20)
    assert service.lock_document(draft.id, "doctor-b") is False


def test_lock_and_unlock_do_not_bump_revision(service, draft):
    service.lock_document(draft.id, "doctor-a")
    service.unlock_document(draft.id, "doctor-a")

    assert service.get_document(draft.id, "doctor-a").revision == draft.revision


def test_only_holder_can_release(service, draft):
    service.lock_document(draft.id, "doctor-a")

    assert service.unlock_document(draft.id, "doctor-b") is False
    assert service.unlock_document(draft.id, "doctor-a") is True
    assert service.unlock_document(draft.id, "doctor-a") is False
    assert service.get_document(draft.id, "doctor-a").lock is None


def test_lock_requires_draft(service, finalized):
    with pytest.raises(InvalidStateTransition):
        service.lock_document(finalized.id, "doctor-a")


def test_lock_unknown_document(service):
    with pytest.raises(DocumentNotFound):
        service.lock_document(uuid4(), "doctor-a")


def test_update_blocked_by_another_clinicians_lock(service, draft):
    service.lock_document(draft.id, "doctor-1")

    with pytest.raises(LockConflict) as exc_info:
        service.update_document(draft.id, {"plan": "Changed"}, "doctor-2")

    assert exc_info.value.locked_by == "doctor-1"
    updated = service.update_document(draft.id, {"plan": "Changed"}, "doctor-1")
    assert updated.plan == "Changed"


def test_stale_lock_does_not_block_updates(service, draft, clock):
    service.lock_document(draft.id, "doctor-1")
    clock.advance(minutes=45)

    updated = service.update_document(draft.id, {"plan": "Changed"}, "doctor-2")
    assert updated.plan == "Changed"


def test_finalize_blocked_by_lock_then_clears_it(service, draft):
    service.lock_document(draft.id, "doctor-1")

    with pytest.raises(LockConflict):
        service.finalize_document(draft.id, "doctor-2", "I attest.")

    finalized = service.finalize_document(draft.id, "doctor-1", "I attest.")
    assert finalized.lock is None


def test_delete_blocked_by_lock(service, draft):
    service.lock_document(draft.id, "doctor-1")

    with pytest.raises(LockConflict):
        service.delete_document(draft.id, "doctor-2", "Duplicate")


def test_lock_staleness_predicate(clock):
    lock = DocumentLock(locked_by="doctor-a", locked_at=clock.now)
    later = clock.now + timedelta(minutes=31)

    assert lock.blocks("doctor-b", clock.now) is True
    assert lock.blocks("doctor-a", clock.now) is False
    assert lock.is_stale(later) is True
    assert lock.blocks("doctor-b", later) is False
    assert lock.is_stale(later, stale_after=timedelta(hours=1)) is False
