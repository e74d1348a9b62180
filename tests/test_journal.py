import pytest

from fundbridge.constants import TxKind
from fundbridge.journal import InMemoryJournal, SQLiteJournal, open_journal
from fundbridge.models import Submission


@pytest.fixture(params=["memory", "sqlite"])
def journal(request, tmp_path):
    if request.param == "memory":
        return InMemoryJournal()
    return SQLiteJournal(tmp_path / "journal.db")


@pytest.mark.asyncio
async def test_record_get_acknowledge(journal):
    await journal.record(Submission(request_id=1, kind=TxKind.FUNDS_TRANSFER, tx_hash="aa", target="bb", amount=5))

    rec = await journal.get(1, TxKind.FUNDS_TRANSFER)
    assert rec.tx_hash == "aa"
    assert rec.amount == 5
    assert rec.submitted_at > 0
    assert not rec.acknowledged
    assert await journal.get(1, TxKind.ACCOUNT_CREATE) is None

    await journal.acknowledge(1, TxKind.FUNDS_TRANSFER)
    assert (await journal.get(1, TxKind.FUNDS_TRANSFER)).acknowledged


@pytest.mark.asyncio
async def test_rerecord_replaces(journal):
    await journal.record(Submission(request_id=1, kind=TxKind.ACCOUNT_CREATE, tx_hash="aa", target="bb", submitted_at=1.0))
    await journal.record(Submission(request_id=1, kind=TxKind.ACCOUNT_CREATE, tx_hash="cc", target="bb", submitted_at=2.0))

    assert (await journal.get(1, TxKind.ACCOUNT_CREATE)).tx_hash == "cc"
    assert len(await journal.recent()) == 1


@pytest.mark.asyncio
async def test_recent_newest_first(journal):
    for i in range(5):
        await journal.record(Submission(request_id=i, kind=TxKind.ACCOUNT_CREATE, tx_hash=f"h{i}", target="t", submitted_at=float(i + 1)))

    recent = await journal.recent(limit=3)

    assert [s.request_id for s in recent] == [4, 3, 2]


@pytest.mark.asyncio
async def test_sqlite_journal_survives_reopen(tmp_path):
    path = tmp_path / "journal.db"
    await SQLiteJournal(path).record(Submission(request_id=9, kind=TxKind.FUNDS_TRANSFER, tx_hash="aa", target="bb", nonce=7))
    await SQLiteJournal(path).record(Submission(request_id=9, kind=TxKind.ACCOUNT_CREATE, tx_hash="cc", target="bb"))

    rec = await SQLiteJournal(path).get(9, TxKind.FUNDS_TRANSFER)

    assert rec.kind == TxKind.FUNDS_TRANSFER
    assert rec.tx_hash == "aa"
    assert rec.nonce == 7
    assert (await SQLiteJournal(path).get(9, TxKind.ACCOUNT_CREATE)).nonce is None


def test_open_journal(tmp_path):
    assert isinstance(open_journal(""), InMemoryJournal)
    assert isinstance(open_journal(str(tmp_path / "j.db")), SQLiteJournal)
