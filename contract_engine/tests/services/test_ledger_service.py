import uuid

from sqlalchemy import update

from contract_engine.core.hashing import hash_chain
from contract_engine.models.contract_ledger import ContractLedgerEntry
from contract_engine.services.ledger_service import LedgerService


def test_entries_form_a_chain_per_contract(db):
    ledger = LedgerService()
    a, b = uuid.uuid4(), uuid.uuid4()

    first = ledger.append_entry(db, contract_id=a, entry_type="CONTRACT_CREATED", payload={"n": 1}, actor_id="tutor-1")
    second = ledger.append_entry(db, contract_id=a, entry_type="CONTRACT_SIGNED", payload={"n": 2})
    other = ledger.append_entry(db, contract_id=b, entry_type="CONTRACT_CREATED", payload={"n": 1})
    db.commit()

    assert (first.seq, second.seq, other.seq) == (1, 2, 1)
    assert first.prev_hash == LedgerService.GENESIS_HASH
    assert second.prev_hash == first.entry_hash
    assert other.prev_hash == LedgerService.GENESIS_HASH
    assert first.entry_hash == hash_chain(first.prev_hash, first.payload_json)

    assert [e.entry_type for e in ledger.list_entries(db, contract_id=a)] == ["CONTRACT_CREATED", "CONTRACT_SIGNED"]
    assert ledger.verify_chain(db, contract_id=a)
    assert ledger.verify_chain(db, contract_id=b)


def test_verify_chain_detects_edited_payload(db):
    ledger = LedgerService()
    cid = uuid.uuid4()
    ledger.append_entry(db, contract_id=cid, entry_type="PAYMENT_INITIATED", payload={"amount": 100})
    entry = ledger.append_entry(db, contract_id=cid, entry_type="PAYMENT_COMPLETED", payload={"amount": 100})
    db.commit()

    tampered = dict(entry.payload_json)
    tampered["payload"] = {"amount": 1}
    db.execute(
        update(ContractLedgerEntry).where(ContractLedgerEntry.id == entry.id).values(payload_json=tampered)
    )
    db.commit()

    assert ledger.verify_chain(db, contract_id=cid) is False


def test_empty_chain_is_valid(db):
    assert LedgerService().verify_chain(db, contract_id=uuid.uuid4()) is True
