"""
Module for accessing Docker v2 (and, as a fallback, v1) registries
"""

import dataclasses
import json
import logging
import os
import urllib.parse

import aiohttp
import yarl

from aiodrc import auth as drc_auth
from aiodrc import digest as drc_digest
from aiodrc import exceptions
from aiodrc import manifest as drc_manifest
from aiodrc import reference
from aiodrc import transfer
from aiodrc import transport as drc_transport
from aiodrc.auth import AuthChallenge, AuthNegotiator, AuthState, make_scope, parse_auth_challenge
from aiodrc.digest import Digest, hash_bytes, hash_file, parse_digest
from aiodrc.manifest import (ManifestEnvelope, ManifestJWS, TrustPolicy, digest_from_manifest_str,
                             jws_from_manifest, make_unsigned_manifest, sign_manifest,
                             verify_jws, verify_manifest)
from aiodrc.reference import (IndexInfo, Reference, parse_index, parse_repo,
                              parse_repo_and_ref, register_index_policy)
from aiodrc.transfer import MAX_REDIRECTS, BlobReadStream
from aiodrc.transport import DEFAULT_USER_AGENT, Transport

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class GetManifestOptions:
    '''
    ref: tag or digest; defaults to the client's
    max_schema_version: 1 to only accept schema 1 manifests
    accept_manifest_lists: return manifest lists (and OCI indexes) rather than fail on them
    '''
    ref: str = None
    max_schema_version: int = 2
    accept_manifest_lists: bool = False


def _is_digest(ref):
    return ref is not None and ':' in ref


def _same_digest(a, b):
    a = drc_digest.parse_digest(a)
    b = drc_digest.parse_digest(b)
    return a.algorithm != b.algorithm or a.hex_value == b.hex_value


class _PaginatingResponse(object):
    # pylint: disable=too-few-public-methods
    def __init__(self, client, url, header, **kwargs):
        self._client = client
        self._url = url
        self._header = header
        self._kwargs = kwargs
        self._elements = []
        self.name = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._url and not self._elements:
            raise StopAsyncIteration

        if self._elements:
            return self._elements.pop(0)

        # pylint: disable=protected-access
        response = await self._client._request('get', self._url,
                                               not_found_message='repository not found',
                                               **self._kwargs)
        body = await response.json(content_type=None)
        if not isinstance(body, dict):
            raise exceptions.InvalidContentError('unexpected tag list response: %r' % body)
        self.name = body.get('name', self.name)
        self._elements = body.get(self._header) or []
        self._kwargs = {}
        nxt = response.links.get('next')
        self._url = str(nxt['url']) if nxt else None

        if self._elements:
            return self._elements.pop(0)
        raise StopAsyncIteration


class RegistryClient(object):
    # pylint: disable=too-many-instance-attributes
    """
    Client for one repository on a Docker v2 registry.

    Can act as an async context manager, closing its HTTP session on exit.
    Otherwise call :meth:`close` when you're done with it.

    Authentication happens on demand: the first request pings the registry
    and, if challenged, gets a bearer token scoped to the repository.
    Concurrent requests share a single login.
    """
    def __init__(self, name, username=None, password=None, token=None,
                 insecure=False, tlsverify=True, scheme=None, timeout=None,
                 user_agent=DEFAULT_USER_AGENT, trust_policy=TrustPolicy.ALL,
                 session=None):
        # pylint: disable=too-many-arguments,too-many-locals
        """
        :param name: Repository, optionally with a tag or digest, e.g. ``busybox``, ``quay.io/coreos/etcd:latest``, ``localhost:5000/foo@sha256:...``.
        :type name: str or :class:`aiodrc.reference.Reference`

        :param username: User name to authenticate as.
        :type username: str

        :param password: User's password.
        :type password: str

        :param token: Bearer token obtained previously. Tokens expire quickly; a new one is obtained if the registry rejects it.
        :type token: str

        :param insecure: Don't verify the registry's TLS certificate.
        :type insecure: bool

        :param tlsverify: When set to False, do not verify TLS certificate. When pointed to a `<ca bundle>.crt` file use this for TLS verification.
        :type tlsverify: bool or str

        :param scheme: ``http`` or ``https``. Defaults to ``http`` for localhost and ``https`` for everything else.
        :type scheme: str

        :param timeout: Total timeout in seconds for each request.
        :type timeout: float

        :param trust_policy: Whether all (the default) or just one of a schema 1 manifest's signatures must verify.
        :type trust_policy: :class:`aiodrc.manifest.TrustPolicy`

        :param session: HTTP session to use. You remain responsible for closing it.
        :type session: aiohttp.ClientSession
        """
        if isinstance(name, Reference):
            self.repo = name
        else:
            self.repo = reference.parse_repo_and_ref(name)
        if scheme not in (None, 'http', 'https'):
            raise exceptions.InvalidReferenceError(
                'invalid scheme, must be "http" or "https": %s' % scheme)
        self._base_url = reference.url_from_index(self.repo.index, scheme)
        self._trust_policy = trust_policy
        self._transport = Transport(insecure=insecure,
                                    tlsverify=tlsverify,
                                    timeout=timeout,
                                    user_agent=user_agent,
                                    session=session)
        self._auth = AuthNegotiator(self._transport, self._base_url, self.repo,
                                    username=username, password=password, token=token)

    @property
    def base_url(self):
        return self._base_url

    @property
    def auth(self):
        '''
        :class:`aiodrc.auth.AuthNegotiator` holding this client's credentials.
        '''
        return self._auth

    def _path(self, *parts):
        path = '/v2/' + urllib.parse.quote(self.repo.remote_name, safe='/')
        for part in parts:
            path += '/' + urllib.parse.quote(part, safe=':')
        return path

    def _url(self, path_or_url):
        if '://' in path_or_url:
            return path_or_url
        return self._base_url + path_or_url

    def _auth_headers_for(self, url, auth_headers):
        base = yarl.URL(self._base_url)
        url = yarl.URL(url)
        if (url.host, url.port) != (base.host, base.port):
            return {}
        return auth_headers

    async def _send(self, method, url, actions=drc_auth.PULL, headers=None,
                    follow=False, retry=True, **kwargs):
        # pylint: disable=too-many-arguments
        """
        Make a request with our credentials, logging in first if needed.

        On a 401 the credentials are dropped, we log in again and the
        request is retried once.

        :rtype: list
        :returns: The chain of responses (just one unless ``follow`` is set).
        """
        url = self._url(url)
        await self._auth.login(actions)
        while True:
            auth_headers = self._auth.headers
            if follow:
                chain = await transfer.follow_redirects(
                    self._transport, method, url, headers, auth_headers)
            else:
                h = dict(headers or {})
                h.update(self._auth_headers_for(url, auth_headers))
                chain = [await self._transport.request(method, url, headers=h, **kwargs)]
            first = chain[0]
            if first.status != 401 or not retry:
                return chain
            retry = False
            first.release()
            logger.debug('%s %s: 401, logging in again', method.upper(), url)
            self._auth.invalidate(auth_headers, first.headers.get('WWW-Authenticate'))
            await self._auth.login(actions)

    async def _request(self, method, url, actions=drc_auth.PULL,
                       not_found_message='not found', **kwargs):
        chain = await self._send(method, url, actions, **kwargs)
        r = chain[-1]
        await drc_transport.raise_for_status(r, not_found_message)
        return r

    async def login(self, actions=drc_auth.PULL):
        """
        Authenticate now rather than on the first request.

        :param actions: ``('pull',)`` or ``('pull', 'push')``.
        :type actions: tuple
        """
        await self._auth.login(actions)

    async def ping(self):
        """
        Ping the registry's ``/v2/`` endpoint.

        :rtype: tuple
        :returns: The response body (usually ``{}``) and the response.
        """
        return await self._auth.ping()

    async def supports_v2(self):
        """
        Whether the registry speaks the v2 API, judged by the
        ``Docker-Distribution-Api-Version`` header on ``/v2/``.

        :rtype: bool
        """
        r = await self._transport.request('get', self._base_url + '/v2/',
                                          headers=self._auth.headers)
        r.release()
        if r.status not in (200, 401):
            logger.debug('v2 ping of %s returned %d', self._base_url, r.status)
            return False
        header = r.headers.get('Docker-Distribution-Api-Version', '')
        return 'registry/2.0' in header.split()

    def iter_tags(self, batch_size=None):
        """
        Iterate over the repository's tags, following pagination links.

        :param batch_size: Number of tags to ask the server for at a time.
        :type batch_size: int

        :rtype: async iterator of str
        """
        kwargs = {}
        if batch_size:
            kwargs['params'] = {'n': batch_size}
        return _PaginatingResponse(self, self._path('tags', 'list'), 'tags', **kwargs)

    async def list_tags(self, batch_size=None):
        """
        List the repository's tags.

        :rtype: dict
        :returns: ``{'name': <repository>, 'tags': [...]}``, with the tags from all pages.
        """
        it = self.iter_tags(batch_size)
        tags = [t async for t in it]
        return {'name': it.name or self.repo.remote_name, 'tags': tags}

    async def get_manifest(self, opts=None):
        """
        Fetch and verify a manifest.

        Schema 1 signatures are checked according to the client's trust
        policy; the ``Docker-Content-Digest`` header (if any) is checked
        against the content; and when fetching by digest the content must
        hash to that digest.

        :param opts: A tag or digest, or options. Defaults to the client's tag or digest.
        :type opts: str or :class:`GetManifestOptions`

        :rtype: :class:`aiodrc.manifest.ManifestEnvelope`
        """
        if not isinstance(opts, GetManifestOptions):
            opts = GetManifestOptions(ref=opts)
        ref = opts.ref or self.repo.ref
        description = self.repo.canonical_name + ('@' if _is_digest(ref) else ':') + ref
        headers = {'Accept': drc_manifest.accept_header(opts.max_schema_version,
                                                        opts.accept_manifest_lists)}
        r = await self._request('get', self._path('manifests', ref),
                                headers=headers, not_found_message='manifest not found')
        raw = await r.read()
        envelope = drc_manifest.verify_manifest(raw,
                                                headers=r.headers,
                                                description=description,
                                                trust_policy=self._trust_policy)

        if envelope.schema_version > opts.max_schema_version:
            raise exceptions.InvalidContentError(
                'unsupported schema version %d in %s manifest (at most %d accepted)' % (
                    envelope.schema_version, description, opts.max_schema_version))
        if envelope.is_list and not opts.accept_manifest_lists:
            raise exceptions.InvalidContentError(
                'unsupported manifest list in %s manifest' % description)

        if _is_digest(ref):
            if envelope.schema_version == 1:
                payload = drc_manifest.jws_from_manifest(envelope.parsed, raw).payload
            else:
                payload = raw
            drc_digest.verify_digest(ref, payload)
        return envelope

    async def head_blob(self, digest):
        """
        ``HEAD`` a blob, following redirects.

        :param digest: Hash of the blob's content (prefixed by e.g. ``sha256:``).
        :type digest: str

        :rtype: list
        :returns: The responses. The first has the registry's ``Docker-Content-Digest``; the last has ``Content-Length``.
        """
        drc_digest.parse_digest(digest)
        chain = await self._send('head', self._path('blobs', digest), follow=True)
        r = chain[-1]
        await drc_transport.raise_for_status(r, 'blob not found')
        r.release()
        return chain

    async def create_blob_read_stream(self, digest):
        """
        Start downloading a blob.

        The returned stream checks the content's length and digest as it
        reaches the end; see :class:`aiodrc.transfer.BlobReadStream`.

        :param digest: Hash of the blob's content (prefixed by e.g. ``sha256:``).
        :type digest: str

        :rtype: tuple
        :returns: The stream and the chain of responses.
        """
        expected = drc_digest.parse_digest(digest)
        chain = await self._send('get', self._path('blobs', digest),
                                 headers={'Accept-Encoding': 'identity'},
                                 follow=True)
        r = chain[-1]
        await drc_transport.raise_for_status(r, 'blob not found')
        dcd = chain[0].headers.get('Docker-Content-Digest')
        try:
            if dcd and not _same_digest(dcd, str(expected)):
                raise exceptions.BadDigestError(dcd, str(expected))
        except exceptions.BadDigestError:
            r.close()
            raise
        stream = transfer.BlobReadStream(expected, r.content,
                                         content_length=r.content_length,
                                         responses=[r])
        return stream, chain

    async def put_manifest(self, manifest, ref=None, media_type=None):
        """
        Upload a manifest.

        :param manifest: The manifest. Dicts are serialised with 3-space indentation, as Docker does.
        :type manifest: str, bytes or dict

        :param ref: Tag or digest to put it under. Defaults to the client's.
        :type ref: str

        :param media_type: ``Content-Type`` to send. Worked out from the manifest if not given.
        :type media_type: str

        :rtype: tuple
        :returns: The manifest's digest and the ``Location`` the registry returned.
        """
        if isinstance(manifest, dict):
            manifest = json.dumps(manifest, indent=3)
        raw = drc_manifest._to_bytes(manifest)  # pylint: disable=protected-access
        parsed = drc_manifest.parse_manifest(raw)
        if media_type is None:
            media_type = parsed.get('mediaType')
        if media_type is None:
            if parsed.get('schemaVersion') == 1:
                media_type = drc_manifest.SCHEMA1_SIGNED_MIMETYPE \
                             if parsed.get('signatures') else drc_manifest.SCHEMA1_MIMETYPE
            else:
                media_type = drc_manifest.SCHEMA2_MIMETYPE
        digest = drc_manifest.digest_from_manifest_str(raw)

        r = await self._request('put', self._path('manifests', ref or self.repo.ref),
                                actions=drc_auth.PUSH,
                                headers={'Content-Type': media_type},
                                data=raw)
        r.release()
        dcd = r.headers.get('Docker-Content-Digest')
        if dcd and not _same_digest(dcd, digest):
            raise exceptions.BadDigestError(dcd, digest)
        return digest, r.headers.get('Location')

    async def blob_upload(self, data, digest, length=None, progress=None, check_exists=True):
        # pylint: disable=too-many-arguments
        """
        Upload a blob in one go (a "monolithic" upload).

        :param data: Content to upload: bytes, a binary file object, or an (async) iterable or stream of bytes.
        :type data: bytes, file or stream

        :param digest: Hash of the content. The registry checks it.
        :type digest: str

        :param length: Size of the content, sent as ``Content-Length``. Worked out for bytes and files if not given.
        :type length: int

        :param progress: Optional function to call as the upload progresses, with the digest, the chunk just sent and ``length``.
        :type progress: function(digest, chunk, length)

        :param check_exists: Skip the upload if a blob with the same digest already exists in the repository.
        :type check_exists: bool

        :rtype: str
        :returns: The digest.
        """
        drc_digest.parse_digest(digest)
        if check_exists:
            try:
                await self.head_blob(digest)
                logger.debug('blob %s already exists, not uploading', digest)
                return digest
            except exceptions.NotFoundError:
                pass

        if length is None:
            length = _content_length(data)

        r = await self._request('post', self._path('blobs', 'uploads') + '/',
                                actions=drc_auth.PUSH)
        r.release()
        location = r.headers.get('Location')
        if not location:
            raise exceptions.RegistryResponseError(
                r.status, r.url, r.method, 'no Location for upload')
        upload_url = r.url.join(yarl.URL(location, encoded=True)).update_query(digest=digest)

        headers = {'Content-Type': 'application/octet-stream'}
        if length is not None:
            headers['Content-Length'] = str(length)
        replayable = isinstance(data, bytes) and progress is None
        if not replayable:
            data = transfer.UploadStream(digest, data, length, progress)
        r = await self._request('put', str(upload_url),
                                actions=drc_auth.PUSH,
                                headers=headers,
                                data=data,
                                retry=replayable)
        r.release()
        dcd = r.headers.get('Docker-Content-Digest')
        if dcd and not _same_digest(dcd, digest):
            raise exceptions.BadDigestError(dcd, digest)
        return digest

    async def close(self):
        await self._transport.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()


def _content_length(data):
    if isinstance(data, (bytes, bytearray, memoryview)):
        return len(data)
    if hasattr(data, 'fileno') and hasattr(data, 'tell'):
        try:
            return os.fstat(data.fileno()).st_size - data.tell()
        except (OSError, ValueError):
            return None
    return None


async def create_client(name, **kwargs):
    """
    Create a client for a repository, using the v2 API if the registry
    supports it and falling back to v1 otherwise.

    :param name: Repository name, e.g. ``busybox`` or ``quay.io/coreos/etcd``.
    :type name: str

    :param kwargs: Passed to :class:`RegistryClient` (or :class:`aiodrc.v1.LegacySession`).

    :rtype: :class:`RegistryClient` or :class:`aiodrc.v1.LegacySession`
    """
    from aiodrc import v1  # pylint: disable=import-outside-toplevel
    client = RegistryClient(name, **kwargs)
    try:
        if await client.supports_v2():
            return client
    except aiohttp.ClientError as ex:
        logger.debug('v2 ping of %s failed: %s', client.base_url, ex)
    await client.close()
    logger.debug('%s does not support v2, using v1', client.base_url)
    v1_kwargs = {k: v for k, v in kwargs.items()
                 if k in ('username', 'password', 'insecure', 'tlsverify', 'scheme',
                          'timeout', 'user_agent', 'session')}
    return v1.LegacySession(name, **v1_kwargs)


__all__ = [
    'AuthChallenge', 'AuthNegotiator', 'AuthState', 'BlobReadStream', 'Digest',
    'GetManifestOptions', 'IndexInfo', 'MAX_REDIRECTS', 'ManifestEnvelope', 'ManifestJWS',
    'Reference', 'RegistryClient', 'Transport', 'TrustPolicy', 'create_client',
    'digest_from_manifest_str', 'exceptions', 'hash_bytes', 'hash_file', 'jws_from_manifest',
    'make_scope', 'make_unsigned_manifest', 'parse_auth_challenge', 'parse_digest',
    'parse_index', 'parse_repo', 'parse_repo_and_ref', 'register_index_policy',
    'sign_manifest', 'verify_jws', 'verify_manifest',
]
