from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from integrations.clients import DownloadClient, Torrent
from integrations.services import ApiError


ACTION_REMOVE = 'remove'
ACTION_TAG = 'tag'
ACTION_SKIP = 'skip'

MODE_ACTIONS = {
    'remove': ACTION_REMOVE,
    'skip': ACTION_SKIP,
    'obsolete_tag': ACTION_TAG,
}


class PolicyError(Exception):
    pass


class RemovalPolicy:
    """Decides what happens to an item that reached its strike limit.

    The protected tag always wins; otherwise the private or public tracker
    handling mode applies. Items no download client knows about are removed.
    """

    def __init__(
        self,
        download_clients: Dict[str, DownloadClient],
        *,
        private_tracker_handling: str = 'remove',
        public_tracker_handling: str = 'remove',
        protected_tag: str = '',
        obsolete_tag: str = '',
        logger: Optional[logging.Logger] = None,
    ) -> None:
        # Shared with the manager registry, so later registrations are seen
        self.download_clients = download_clients
        self.private_tracker_handling = private_tracker_handling
        self.public_tracker_handling = public_tracker_handling
        self.protected_tag = protected_tag
        self.obsolete_tag = obsolete_tag
        self.logger = logger or logging.getLogger(__name__)

    async def find(self, download_id: str) -> Tuple[Optional[DownloadClient], Optional[Torrent]]:
        for name, client in list(self.download_clients.items()):
            try:
                torrent = await client.get_torrent(download_id)
            except ApiError as e:
                self.logger.debug(f'Client {name}: lookup of {download_id} failed: {e}')
                continue
            if torrent is not None:
                return client, torrent
        return None, None

    async def resolve(self, download_id: str) -> str:
        client, torrent = await self.find(download_id)
        if client is None or torrent is None:
            return ACTION_REMOVE

        if self.protected_tag and torrent.has_tag(self.protected_tag):
            self.logger.debug(f'Policy: {download_id} carries protected tag {self.protected_tag}')
            return ACTION_SKIP

        try:
            private = await client.is_private_tracker(download_id)
        except ApiError as e:
            self.logger.warning(f'Client {client.name}: cannot classify tracker for {download_id}, treating as public: {e}')
            private = False

        mode = self.private_tracker_handling if private else self.public_tracker_handling
        action = MODE_ACTIONS.get(mode)
        if action is None:
            self.logger.warning(f'Policy: unknown tracker handling mode {mode!r}; defaulting to remove')
            return ACTION_REMOVE
        return action

    async def apply_obsolete_tag(self, download_id: str) -> None:
        if not self.obsolete_tag:
            raise PolicyError('no obsolete tag configured')
        client, torrent = await self.find(download_id)
        if client is None or torrent is None:
            raise PolicyError(f'{download_id} not found in any download client')
        if torrent.has_tag(self.obsolete_tag):
            return
        await client.add_tags(download_id, [self.obsolete_tag])
        self.logger.info(f'Client {client.name}: tagged {download_id} as {self.obsolete_tag}')
