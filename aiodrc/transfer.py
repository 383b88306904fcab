"""
Blob transfer: bounded redirect-following and streamed digest checks.

Registries often answer a blob request with a redirect to external
storage (S3, GCS, a CDN). We follow those ourselves so that registry
credentials never leave the registry host, and so the chain of responses
is available to the caller: the first response is the registry's own
(and carries ``Docker-Content-Digest``), the last one has the content.
"""

import asyncio
import logging

import aiohttp
import aiohttp.payload
import aiohttp.streams
import yarl

from aiodrc import digest as drc_digest
from aiodrc import exceptions

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 3
REDIRECT_STATUSES = (301, 302, 303, 307, 308)


def _origin(url):
    return (url.host, url.port)


async def follow_redirects(transport, method, url, headers=None, auth_headers=None,
                           max_redirects=MAX_REDIRECTS):
    # pylint: disable=too-many-arguments
    """
    Make a request, following up to ``max_redirects`` redirects.

    :param transport: Transport to make the requests with.
    :type transport: :class:`aiodrc.transport.Transport`

    :param method: ``head`` or ``get``.
    :type method: str

    :param headers: Headers sent with every request in the chain.
    :type headers: dict

    :param auth_headers: Registry credentials, only sent to the host (and port) of the first URL.
    :type auth_headers: dict

    :rtype: list
    :returns: The responses in the order they were received. All but the last have been released. No status check is made on the last one.
    """
    url = yarl.URL(url) if isinstance(url, str) else url
    origin = _origin(url)
    chain = []
    while True:
        h = dict(headers or {})
        if auth_headers and _origin(url) == origin:
            h.update(auth_headers)
        r = await transport.request(method, url, headers=h, allow_redirects=False)
        chain.append(r)
        if r.status not in REDIRECT_STATUSES:
            return chain
        r.release()
        if len(chain) > max_redirects:
            raise exceptions.TooManyRedirectsError(max_redirects, str(chain[0].url))
        location = r.headers.get('Location')
        if not location:
            raise exceptions.RegistryResponseError(
                r.status, r.url, r.method, 'redirect without a Location header')
        url = r.url.join(yarl.URL(location, encoded=True))
        logger.debug('%s redirected (%d) to %s', method.upper(), r.status, url)


class BlobReadStream(object):
    """
    Reads a blob's content while hashing it.

    Once the end of the content is reached the number of bytes read is
    checked against the ``Content-Length`` of the final response
    (:class:`aiodrc.exceptions.DownloadError`) and then the hash against the
    requested digest (:class:`aiodrc.exceptions.BadDigestError`). The error
    is raised from the read which hits the end, and again from any later
    read. Content already returned must be discarded in that case.

    Supports ``async for`` and the ``iter_chunked``/``iter_any`` helpers.
    """
    def __init__(self, digest, stream, content_length=None, responses=()):
        """
        :param digest: Digest the content must hash to.
        :type digest: str or :class:`aiodrc.digest.Digest`

        :param stream: Stream to read from, usually ``response.content``.
        :type stream: aiohttp.StreamReader

        :param content_length: Expected number of bytes, if known.
        :type content_length: int

        :param responses: Responses to close if reading is abandoned.
        :type responses: list
        """
        self._verifier = drc_digest.DigestVerifier(digest)
        self._stream = stream
        self.content_length = content_length
        self._responses = list(responses)
        self._done = False
        self._error = None

    @property
    def digest(self):
        return self._verifier.expected

    @property
    def bytes_read(self):
        return self._verifier.num_bytes

    @property
    def verified(self):
        return self._done and self._error is None

    def _verify(self):
        if self._done:
            if self._error is not None:
                raise self._error
            return
        self._done = True
        try:
            if self.content_length is not None and \
               self._verifier.num_bytes != self.content_length:
                raise exceptions.DownloadError(self._verifier.num_bytes, self.content_length)
            self._verifier.verify()
        except exceptions.DRCError as ex:
            self._error = ex
            raise

    def _update(self, data):
        self._verifier.update(data)

    async def _from_stream(self, read):
        try:
            return await read
        except aiohttp.ClientPayloadError as ex:
            # connection dropped before the body was complete
            self._done = True
            self._error = exceptions.DownloadError(self.bytes_read, self.content_length)
            logger.debug('blob %s cut short: %s', self.digest, ex)
            raise self._error from ex

    async def readline(self):
        if self._done:
            self._verify()
            return b''
        line = await self._from_stream(self._stream.readline())
        if line:
            self._update(line)
        else:
            self._verify()
        return line

    async def read(self, n: int=-1):
        if self._done:
            self._verify()
            return b''
        chunk = await self._from_stream(self._stream.read(n))
        if chunk:
            self._update(chunk)
        else:
            self._verify()
        return chunk

    async def readany(self):
        if self._done:
            self._verify()
            return b''
        chunk = await self._from_stream(self._stream.readany())
        if chunk:
            self._update(chunk)
        else:
            self._verify()
        return chunk

    async def readchunk(self):
        if self._done:
            self._verify()
            return b'', False
        chunk, ec = await self._from_stream(self._stream.readchunk())
        if chunk:
            self._update(chunk)
        elif not ec:
            # (b'', True) only marks an HTTP chunk boundary
            self._verify()
        return chunk, ec

    async def readexactly(self, n: int):
        if self._done:
            self._verify()
            raise asyncio.IncompleteReadError(b'', n)
        try:
            chunk = await self._from_stream(self._stream.readexactly(n))
        except asyncio.IncompleteReadError as ex:
            self._update(ex.partial)
            self._verify()
            raise
        self._update(chunk)
        return chunk

    def __aiter__(self):
        return aiohttp.streams.AsyncStreamIterator(self.readline)

    def iter_chunked(self, n: int):
        """
        Iterate over the content in chunks of at most ``n`` bytes.
        """
        return aiohttp.streams.AsyncStreamIterator(lambda: self.read(n))

    def iter_any(self):
        return aiohttp.streams.AsyncStreamIterator(self.readany)

    async def read_all(self):
        """
        Read and verify the rest of the content.

        :rtype: bytes
        """
        chunks = []
        while True:
            chunk = await self.readany()
            if not chunk:
                return b''.join(chunks)
            chunks.append(chunk)

    def close(self):
        '''
        Release the underlying connection. Closes it if the content hasn't
        been read to the end.
        '''
        for r in self._responses:
            if self._done:
                r.release()
            else:
                r.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        self.close()


class UploadStream(object):
    """
    Feeds blob content to an upload request in chunks, calling
    ``progress(digest, chunk, total)`` as each chunk goes out (and once with
    an empty chunk before the first).

    ``source`` can be bytes, a binary file object, an
    :class:`aiohttp.StreamReader` or any (async) iterable of bytes.
    """
    def __init__(self, digest, source, total=None, progress=None, chunk_size=65536):
        # pylint: disable=too-many-arguments
        self._digest = digest
        self._source = source
        self._total = total
        self._progress = progress
        self._chunk_size = chunk_size
        self._offset = 0
        self._iter = None
        self._started = False

    async def _next_chunk(self):
        source = self._source
        if isinstance(source, (bytes, bytearray, memoryview)):
            chunk = bytes(source[self._offset:self._offset + self._chunk_size])
            self._offset += len(chunk)
            return chunk
        if hasattr(source, 'readany'):
            return await source.readany()
        if hasattr(source, 'read'):
            chunk = source.read(self._chunk_size)
            if asyncio.iscoroutine(chunk):
                chunk = await chunk
            return chunk
        if self._iter is None:
            self._iter = source.__aiter__() if hasattr(source, '__aiter__') else iter(source)
        try:
            if hasattr(self._iter, '__anext__'):
                return await self._iter.__anext__()
            return next(self._iter)
        except (StopIteration, StopAsyncIteration):
            return b''

    async def readany(self):
        if not self._started:
            self._started = True
            if self._progress:
                self._progress(self._digest, b'', self._total)
        chunk = await self._next_chunk()
        if chunk and self._progress:
            self._progress(self._digest, chunk, self._total)
        return chunk

    async def read(self, n: int=-1):
        return await self.readany()

    def __aiter__(self):
        return aiohttp.streams.AsyncStreamIterator(self.readany)

    def iter_any(self):
        return aiohttp.streams.AsyncStreamIterator(self.readany)
aiohttp.payload.register_payload(aiohttp.payload.StreamReaderPayload, UploadStream)
