"""
HTTP transport shared by the v2 client, the auth negotiator and the
legacy v1 session. Owns the aiohttp session (and so the connection pool).
"""

import logging
import ssl

import aiohttp

from aiodrc import exceptions

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = 'aiodrc/0.1.0'


class Transport(object):
    """
    Thin wrapper around an
    `aiohttp.ClientSession <https://docs.aiohttp.org/en/latest/client_reference.html#client-session>`_.

    The session is created on first use. :meth:`close` closes it (if we
    created it) and is safe to call more than once; a request made after
    :meth:`close` gets a fresh session.
    """
    def __init__(self, insecure=False, tlsverify=True, timeout=None,
                 user_agent=DEFAULT_USER_AGENT, session=None):
        # pylint: disable=too-many-arguments
        """
        :param insecure: Don't verify TLS certificates.
        :type insecure: bool

        :param tlsverify: When set to False, do not verify TLS certificate. When pointed to a `<ca bundle>.crt` file use this for TLS verification.
        :type tlsverify: bool or str

        :param timeout: Total timeout for each request, in seconds.
        :type timeout: float

        :param user_agent: ``User-Agent`` header sent with every request.
        :type user_agent: str

        :param session: Use this session instead of creating one. It won't be closed by :meth:`close`.
        :type session: aiohttp.ClientSession
        """
        if insecure:
            tlsverify = False
        if isinstance(tlsverify, str):
            tlsverify = ssl.create_default_context(cafile=tlsverify)
        self._tlsverify = tlsverify if tlsverify is not True else None
        self._timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
        self._user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    @property
    def session(self):
        if self._session is None:
            kwargs = {'headers': {'User-Agent': self._user_agent}}
            if self._timeout:
                kwargs['timeout'] = self._timeout
            self._session = aiohttp.ClientSession(**kwargs)
            self._owns_session = True
        return self._session

    async def request(self, method, url, headers=None, allow_redirects=True, **kwargs):
        logger.debug('%s %s', method.upper(), url)
        return await self.session.request(method, url,
                                          headers=headers or {},
                                          ssl=self._tlsverify,
                                          allow_redirects=allow_redirects,
                                          **kwargs)

    async def close(self):
        session = self._session
        self._session = None
        if session is not None and self._owns_session and not session.closed:
            await session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()


async def json_or_none(r):
    try:
        return await r.json(content_type=None)
    except ValueError:
        return None


def _is_json(r):
    ctype = r.headers.get('Content-Type', '').split(';')[0].strip().lower()
    return ctype == 'application/json' or ctype.endswith('+json')


async def raise_for_status(r, not_found_message='not found'):
    """
    Raise the appropriate :class:`aiodrc.exceptions.RegistryResponseError`
    if ``r`` is unsuccessful.

    Registry JSON error documents (``{"errors": [{"code": ..., "message": ...}]}``)
    become the error message. Non-JSON 404 bodies (usually a page of HTML)
    are replaced by ``not_found_message``.
    """
    if r.status < 400:
        return
    message = None
    if _is_json(r):
        body = await json_or_none(r)
        if isinstance(body, dict):
            errors = body.get('errors')
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                message = '%s: %s' % (errors[0].get('code'), errors[0].get('message'))
            elif isinstance(body.get('error'), str):
                message = body['error']
    r.release()

    args = (r.status, r.url, r.method)
    if r.status in (401, 403):
        raise exceptions.AuthenticationError(message or r.reason, *args)
    if r.status == 404:
        raise exceptions.NotFoundError(*args, message=message or not_found_message)
    raise exceptions.RegistryResponseError(*args, message=message or r.reason)
