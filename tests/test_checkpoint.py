import pytest

from common.errors import CheckpointError
from common.models import Checkpoint
from ingestion.checkpoint import CheckpointStore


class FakeSink:
    def __init__(self, cp=None):
        self.cp = cp

    async def load_checkpoint(self):
        return self.cp


@pytest.mark.asyncio
async def test_checkpoint_read_none():
    cps = CheckpointStore(FakeSink())
    assert await cps.load() is None
    assert cps.resume_block(5) == 5
    assert cps.resume_block(None) is None


@pytest.mark.asyncio
async def test_checkpoint_read_and_advance():
    cps = CheckpointStore(FakeSink(Checkpoint(123, "0xabc")))
    assert (await cps.load()).last_block_number == 123
    assert cps.resume_block(0) == 124
    cps.advance(Checkpoint(130, "0xdef"))
    assert cps.current == Checkpoint(130, "0xdef")


@pytest.mark.asyncio
async def test_checkpoint_cannot_move_backwards():
    cps = CheckpointStore(FakeSink(Checkpoint(123, "0xabc")))
    await cps.load()
    with pytest.raises(CheckpointError):
        cps.advance(Checkpoint(100, "0x01"))
    cps.reset(Checkpoint(100, "0x01"))
    assert cps.resume_block(0) == 101


@pytest.mark.asyncio
async def test_checkpoint_corrupt_row():
    with pytest.raises(CheckpointError):
        await CheckpointStore(FakeSink(Checkpoint(-1, ""))).load()
