import anyio
import httpx
from sqlmodel import SQLModel, Session, create_engine

from tandem import crud
from tandem.api_client import ApiClient, FetchResponse
from tandem.errors import NetworkFatal, NetworkTransient
from tandem.main import app
from tandem.puzzles import BundlePuzzleProvider, RemotePuzzleProvider
from tandem.schemas import GameVariant, PuzzleDescriptor


def test_bundle_provider(tmp_path):
    path = tmp_path / 'bundle.json'
    path.write_text('{"tandem": {"2025-09-02": {"content": {"theme": "Sky"}}, "2025-09-03": {"local_date": "nope"}}}')
    provider = BundlePuzzleProvider.from_file(str(path))

    async def main():
        p = await provider.get_puzzle('emoji-pair', '2025-09-02')
        assert p.variant == GameVariant.EMOJI_PAIR
        assert p.puzzle_number == 19
        assert await provider.get_puzzle('tandem', '2025-09-02') is p
        assert await provider.get_puzzle('tandem', '2025-09-03') is None
        assert await provider.get_puzzle('tandem', '2025-09-04') is None
        assert await provider.get_puzzle('tandem', 'tomorrow') is None

        provider.add(PuzzleDescriptor(variant='mini', local_date='2025-09-04', solution=['cat']))
        assert (await provider.get_puzzle('mini', '2025-09-04')).solution == ['cat']

    anyio.run(main)


def test_remote_provider_against_service(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'p.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    with Session(engine) as s:
        crud.upsert_puzzle(s, 'reel', '2025-09-02', {'groups': []}, number=19)

    async def main():
        async with ApiClient(base_url='http://test', transport=httpx.ASGITransport(app=app)) as api:
            provider = RemotePuzzleProvider(api)
            p = await provider.get_puzzle('grouping', '2025-09-02')
            assert p.variant == GameVariant.GROUPING and p.puzzle_number == 19
            assert await provider.get_puzzle('reel', '2025-09-02') is p
            assert await provider.get_puzzle('reel', '2025-09-03') is None

    anyio.run(main)


class StatusApi:
    def __init__(self, status):
        self.status = status

    async def get_puzzle(self, variant, date):
        return FetchResponse(ok=False, status=self.status, json={'detail': 'x'})


def test_remote_provider_error_statuses():
    async def main():
        for status, error in ((503, NetworkTransient), (429, NetworkTransient), (403, NetworkFatal)):
            try:
                await RemotePuzzleProvider(StatusApi(status)).get_puzzle('tandem', '2025-09-02')
            except error as exc:
                assert exc.status == status
            else:
                raise AssertionError(f'{status} did not raise')

    anyio.run(main)
