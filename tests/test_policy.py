import pytest

from core.policy import ACTION_REMOVE, ACTION_SKIP, ACTION_TAG, PolicyError, RemovalPolicy
from integrations.clients import DownloadClient, DownloadClientError, Torrent


pytestmark = pytest.mark.asyncio


class FakeClient(DownloadClient):
    kind = 'qbittorrent'

    def __init__(self, name, torrents, private=None, fail_private=False, fail_lookup=False):
        super().__init__(name)
        self.torrents = torrents
        self.private = private or {}
        self.fail_private = fail_private
        self.fail_lookup = fail_lookup
        self.tagged = []

    async def get_torrents(self):
        if self.fail_lookup:
            raise DownloadClientError(f'{self.name} down')
        return list(self.torrents)

    async def is_private_tracker(self, torrent_id):
        if self.fail_private:
            raise DownloadClientError('properties unavailable')
        return self.private.get(torrent_id.lower(), False)

    async def add_tags(self, torrent_id, tags):
        self.tagged.append((torrent_id, list(tags)))


def _policy(clients, **kw):
    return RemovalPolicy({c.name: c for c in clients}, **kw)


async def test_not_found_anywhere_resolves_remove():
    policy = _policy([FakeClient('qb', [])], private_tracker_handling='skip', public_tracker_handling='skip')
    assert await policy.resolve('abc') == ACTION_REMOVE


async def test_no_clients_resolves_remove():
    assert await _policy([]).resolve('abc') == ACTION_REMOVE


@pytest.mark.parametrize('private', [True, False])
@pytest.mark.parametrize('mode', ['remove', 'skip', 'obsolete_tag'])
async def test_protected_tag_always_skips(private, mode):
    client = FakeClient('qb', [Torrent(hash='abc', tags=['keep'])], private={'abc': private})
    policy = _policy(
        [client],
        protected_tag='keep',
        private_tracker_handling=mode,
        public_tracker_handling=mode,
    )
    assert await policy.resolve('ABC') == ACTION_SKIP


@pytest.mark.parametrize('mode,expected', [
    ('remove', ACTION_REMOVE),
    ('skip', ACTION_SKIP),
    ('obsolete_tag', ACTION_TAG),
    ('keep', ACTION_REMOVE),
])
async def test_private_tracker_uses_private_mode(mode, expected):
    client = FakeClient('qb', [Torrent(hash='abc')], private={'abc': True})
    policy = _policy([client], private_tracker_handling=mode, public_tracker_handling='remove')
    assert await policy.resolve('abc') == expected


async def test_public_tracker_uses_public_mode():
    client = FakeClient('qb', [Torrent(hash='abc')], private={'abc': False})
    policy = _policy([client], private_tracker_handling='remove', public_tracker_handling='obsolete_tag')
    assert await policy.resolve('abc') == ACTION_TAG


async def test_classification_failure_treated_as_public():
    client = FakeClient('qb', [Torrent(hash='abc')], fail_private=True)
    policy = _policy([client], private_tracker_handling='remove', public_tracker_handling='skip')
    assert await policy.resolve('abc') == ACTION_SKIP


async def test_lookup_failure_on_one_client_tries_the_next():
    broken = FakeClient('broken', [], fail_lookup=True)
    good = FakeClient('good', [Torrent(hash='abc')], private={'abc': True})
    policy = _policy([broken, good], private_tracker_handling='skip')
    assert await policy.resolve('abc') == ACTION_SKIP


async def test_apply_obsolete_tag_adds_tag_once():
    client = FakeClient('qb', [Torrent(hash='abc')])
    policy = _policy([client], obsolete_tag='obsolete')
    await policy.apply_obsolete_tag('abc')
    assert client.tagged == [('abc', ['obsolete'])]

    client.torrents = [Torrent(hash='abc', tags=['obsolete'])]
    await policy.apply_obsolete_tag('abc')
    assert len(client.tagged) == 1


async def test_apply_obsolete_tag_without_tag_configured_fails():
    client = FakeClient('qb', [Torrent(hash='abc')])
    with pytest.raises(PolicyError):
        await _policy([client]).apply_obsolete_tag('abc')


async def test_apply_obsolete_tag_unknown_item_fails():
    with pytest.raises(PolicyError):
        await _policy([FakeClient('qb', [])], obsolete_tag='obsolete').apply_obsolete_tag('abc')
