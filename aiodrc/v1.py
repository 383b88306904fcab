"""
Read-only client for the legacy (v1) registry API, for registries which
don't speak v2.

v1 has no content addressing, so nothing here verifies digests. A repo on
a non-"standalone" registry needs a session token from the index first
(the ``X-Docker-Token`` header on the repository's image list); after
that the registry tracks the session with cookies, which the
aiohttp session's cookie jar takes care of.
"""

import logging
import urllib.parse

from aiodrc import auth as drc_auth
from aiodrc import reference
from aiodrc import transfer
from aiodrc import transport as drc_transport

logger = logging.getLogger(__name__)


def _quote(s, safe='/'):
    return urllib.parse.quote(s, safe=safe)


class LegacySession(object):
    # pylint: disable=too-many-instance-attributes
    """
    Session with a v1 registry for one repository.

    Can act as an async context manager, closing its HTTP session on exit.
    """
    def __init__(self, name, username=None, password=None, standalone=None,
                 insecure=False, tlsverify=True, scheme=None, timeout=None,
                 user_agent=drc_transport.DEFAULT_USER_AGENT, session=None):
        # pylint: disable=too-many-arguments
        """
        :param name: Repository name, e.g. ``busybox`` or ``quay.io/coreos/etcd``. A tag is ignored.
        :type name: str or :class:`aiodrc.reference.Reference`

        :param standalone: Whether the registry does its own auth rather than using an index. Found out by :meth:`ping` if not given (and not known for the index).
        :type standalone: bool
        """
        if isinstance(name, reference.Reference):
            self.repo = name
        else:
            self.repo = reference.parse_repo_and_ref(name)
        policy = reference.index_policy(self.repo.index.name)
        self.standalone = standalone if standalone is not None else policy.v1_standalone
        base_url = reference.url_from_index(self.repo.index, scheme)
        self._index_url = policy.index_url or base_url
        self._registry_url = base_url
        self._transport = drc_transport.Transport(insecure=insecure,
                                                  tlsverify=tlsverify,
                                                  timeout=timeout,
                                                  user_agent=user_agent,
                                                  session=session)
        self._headers = {}
        if username is not None and password is not None:
            self._headers = {'Authorization': drc_auth.basic_auth_header(username, password)}
        self.token = None
        self.endpoints = None

    async def _get(self, base_url, path, headers=None, not_found_message='not found'):
        h = dict(self._headers)
        h.update(headers or {})
        r = await self._transport.request('get', base_url + path, headers=h)
        await drc_transport.raise_for_status(r, not_found_message)
        return r

    async def ping(self):
        """
        ``GET /v1/_ping`` on the index.

        If we don't already know whether the registry is standalone, this
        finds out from the ``X-Docker-Registry-Standalone`` header.

        :rtype: tuple
        :returns: The response body and the response.
        """
        r = await self._get(self._index_url, '/v1/_ping')
        body = await drc_transport.json_or_none(r)
        if self.standalone is None:
            header = r.headers.get('X-Docker-Registry-Standalone', '')
            self.standalone = header.lower() in ('1', 'true')
            logger.debug('set standalone=%s from ping of %s', self.standalone, self._index_url)
        return body, r

    async def _ensure_standalone(self):
        if self.standalone is None:
            await self.ping()

    async def _ensure_token(self):
        await self._ensure_standalone()
        if self.standalone or self.token:
            return
        await self.list_repo_imgs()

    async def list_repo_imgs(self):
        """
        List the repository's images (from the index).

        As a side effect this gets a session token (``X-Docker-Token``)
        for later requests, and the registry endpoints the index points at
        (``X-Docker-Endpoints``).

        :rtype: list
        """
        r = await self._get(self._index_url,
                            '/v1/repositories/%s/images' % _quote(self.repo.remote_name),
                            headers={'X-Docker-Token': 'true'},
                            not_found_message='repository not found')
        body = await drc_transport.json_or_none(r)
        endpoints = r.headers.get('X-Docker-Endpoints')
        if endpoints:
            scheme = urllib.parse.urlparse(self._index_url).scheme
            self.endpoints = [scheme + '://' + e.strip() for e in endpoints.split(',')]
        token = r.headers.get('X-Docker-Token')
        if token:
            self.token = token
            self._headers = {'Authorization': 'Token ' + token}
        return body

    async def list_repo_tags(self):
        """
        :rtype: dict
        :returns: Tag names mapped to image IDs.
        """
        await self._ensure_token()
        r = await self._get(self._registry_url,
                            '/v1/repositories/%s/tags' % _quote(self.repo.remote_name),
                            not_found_message='repository not found')
        return await drc_transport.json_or_none(r)

    async def get_img_id(self, tag):
        await self._ensure_token()
        r = await self._get(self._registry_url,
                            '/v1/repositories/%s/tags/%s' % (
                                _quote(self.repo.remote_name), _quote(tag, safe='')),
                            not_found_message='tag not found')
        return await drc_transport.json_or_none(r)

    async def get_img_ancestry(self, img_id):
        """
        Get the IDs of all the image layers an image needs, itself first.

        :rtype: list
        """
        await self._ensure_token()
        r = await self._get(self._registry_url,
                            '/v1/images/%s/ancestry' % _quote(img_id, safe=''),
                            not_found_message='image not found')
        return await drc_transport.json_or_none(r)

    async def get_img_json(self, img_id):
        """
        Get an image's metadata.

        :rtype: tuple
        :returns: The metadata and the response, whose headers include ``X-Docker-Size``.
        """
        await self._ensure_token()
        r = await self._get(self._registry_url,
                            '/v1/images/%s/json' % _quote(img_id, safe=''),
                            not_found_message='image not found')
        return (await drc_transport.json_or_none(r)), r

    async def get_img_layer_stream(self, img_id):
        """
        Start downloading an image layer, following redirects.

        :rtype: aiohttp.ClientResponse
        :returns: The final response. Read the layer from its ``content``.
        """
        await self._ensure_token()
        chain = await transfer.follow_redirects(
            self._transport, 'get',
            self._registry_url + '/v1/images/%s/layer' % _quote(img_id, safe=''),
            auth_headers=self._headers)
        r = chain[-1]
        await drc_transport.raise_for_status(r, 'image layer not found')
        return r

    async def close(self):
        await self._transport.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
