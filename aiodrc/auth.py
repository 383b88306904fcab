"""
Registry v2 auth negotiation.

A ``GET /v2/`` tells us what the registry wants: 200 means nothing (for
now), 401 comes with a ``WWW-Authenticate`` challenge. Basic auth needs no
further handshake, so a Basic challenge after we've already sent our
credentials is a failure. A Bearer challenge names a token endpoint
(``realm``) which we ask for a token scoped to our repository.

See docker/docker.git:registry/token.go and
https://docs.docker.com/registry/spec/auth/token/
"""

import asyncio
import base64
import dataclasses
import logging
import re
import urllib.parse

import www_authenticate

from aiodrc import exceptions
from aiodrc import transport as drc_transport

logger = logging.getLogger(__name__)

PULL = ('pull',)
PUSH = ('pull', 'push')


@dataclasses.dataclass(frozen=True)
class AuthChallenge:
    scheme: str
    realm: str = None
    service: str = None
    scope: str = None


@dataclasses.dataclass
class AuthState:
    '''
    Mutable auth state owned by one client.

    headers is replaced as a whole whenever it changes, never updated in
    place. actions is None once the registry let us in without a token.
    '''
    logged_in: bool = False
    headers: dict = dataclasses.field(default_factory=dict)
    challenge: AuthChallenge = None
    last_error: Exception = None
    actions: frozenset = frozenset()


def parse_auth_challenge(header):
    """
    Parse a ``WWW-Authenticate`` header like::

        Bearer realm="https://auth.docker.io/token",service="registry.docker.io"

    If the header holds several challenges, Bearer is preferred over Basic.

    :rtype: :class:`AuthChallenge`
    """
    if not header:
        raise exceptions.AuthenticationError('missing WWW-Authenticate header')
    try:
        parsed = www_authenticate.parse(header)
    except ValueError as ex:
        raise exceptions.AuthenticationError(
            'could not parse WWW-Authenticate header "%s": %s' % (header, ex)) from ex
    if not parsed:
        raise exceptions.AuthenticationError(
            'could not parse WWW-Authenticate header "%s"' % header)

    schemes = [s.lower() for s in parsed]
    for preferred in ('bearer', 'basic'):
        if preferred in schemes:
            scheme = preferred
            break
    else:
        scheme = schemes[0]
    params = parsed[scheme]
    if not isinstance(params, dict):
        params = {}
    return AuthChallenge(scheme=scheme,
                         realm=params.get('realm'),
                         service=params.get('service'),
                         scope=params.get('scope'))


def make_scope(remote_name, actions=PULL):
    return 'repository:%s:%s' % (remote_name, ','.join(actions))


def basic_auth_header(username, password):
    return 'Basic ' + base64.b64encode(
        (username + ':' + password).encode('utf-8')).decode('utf-8')


class AuthNegotiator(object):
    """
    Turns a registry's 401 challenge into credentials for one client.

    Logins are serialised: concurrent callers wait for the one in flight
    and then find the client already logged in.
    """
    def __init__(self, transport, base_url, repo=None,
                 username=None, password=None, token=None):
        # pylint: disable=too-many-arguments
        """
        :param transport: HTTP transport to make the ping and token requests with.
        :type transport: :class:`aiodrc.transport.Transport`

        :param base_url: Registry base URL, e.g. ``https://registry-1.docker.io``.
        :type base_url: str

        :param repo: Repository tokens are scoped to.
        :type repo: :class:`aiodrc.reference.Reference`

        :param token: A bearer token obtained previously.
        :type token: str
        """
        self._transport = transport
        self._base_url = base_url.rstrip('/')
        self._repo = repo
        self._username = username
        self._password = password
        self._lock = asyncio.Lock()
        self.state = AuthState()
        if username is not None and password is not None:
            self.state.headers = {'Authorization': basic_auth_header(username, password)}
        elif token:
            self.state.headers = {'Authorization': 'Bearer ' + token}

    @property
    def headers(self):
        '''
        The auth headers to send now. Treat as read-only.
        '''
        return self.state.headers

    @property
    def logged_in(self):
        return self.state.logged_in

    async def ping(self):
        """
        ``GET /v2/`` with our current credentials.

        A 200 marks us logged in; a 401 records the registry's challenge
        before raising :class:`aiodrc.exceptions.AuthenticationError`.

        :rtype: tuple
        :returns: The response body (parsed JSON, or ``None``) and the response.
        """
        url = self._base_url + '/v2/'
        r = await self._transport.request('get', url, headers=self.state.headers)
        if r.status == 401:
            try:
                self.state.challenge = parse_auth_challenge(r.headers.get('WWW-Authenticate'))
                logger.debug('ping %s: challenged with %s', url, self.state.challenge)
            except exceptions.AuthenticationError as ex:
                logger.debug('ignoring unparseable WWW-Authenticate header: %s', ex)
        try:
            await drc_transport.raise_for_status(r)
        except exceptions.DRCError as ex:
            self.state.last_error = ex
            raise
        body = await drc_transport.json_or_none(r)
        if r.status == 200:
            self.state.logged_in = True
            self.state.actions = None
        return body, r

    def _sufficient(self, actions):
        state = self.state
        return state.logged_in and (state.actions is None or actions <= state.actions)

    async def login(self, actions=PULL):
        """
        Make sure we have credentials good for ``actions`` on our repository.
        Does nothing if we already have.

        :param actions: e.g. ``('pull',)`` or ``('pull', 'push')``.
        :type actions: iterable of str
        """
        actions = frozenset(actions)
        if self._sufficient(actions):
            return
        async with self._lock:
            if self._sufficient(actions):
                return
            await self._login(actions)

    async def _login(self, actions):
        state = self.state
        if state.challenge is None:
            try:
                await self.ping()
                logger.debug('ping %s succeeded, no auth required', self._base_url)
                return
            except exceptions.AuthenticationError:
                if state.challenge is None:
                    raise

        challenge = state.challenge
        if challenge.scheme == 'basic':
            # Any username/password were already sent with the ping.
            logger.debug('basic auth failed for %s', self._base_url)
            raise state.last_error or exceptions.AuthenticationError(
                'authentication required', 401, self._base_url + '/v2/')

        if challenge.scheme != 'bearer':
            raise exceptions.UnsupportedAuthSchemeError(challenge.scheme, self._base_url)

        if state.actions:
            # Never trade a token for a narrower one.
            actions = actions | state.actions
        token = await self._get_token(
            challenge, sorted(actions, key=lambda a: (a != 'pull', a != 'push', a)))
        state.headers = {'Authorization': 'Bearer ' + token}
        state.actions = actions
        state.logged_in = True

    async def _get_token(self, challenge, actions):
        realm = challenge.realm
        if not realm:
            raise exceptions.AuthenticationError('no realm in Bearer challenge')
        match = re.match(r'^(\w+)://', realm)
        if not match:
            realm = 'https://' + realm
        elif match.group(1) not in ('http', 'https'):
            raise exceptions.AuthenticationError(
                'unsupported scheme for WWW-Authenticate realm "%s": "%s"' % (
                    realm, match.group(1)))

        query = {}
        if challenge.service:
            query['service'] = challenge.service
        if self._repo is not None:
            query['scope'] = make_scope(self._repo.remote_name, actions)
        elif challenge.scope:
            query['scope'] = challenge.scope
        headers = {}
        if self._username is not None and self._password is not None:
            query['account'] = self._username
            headers['Authorization'] = basic_auth_header(self._username, self._password)

        url_parts = list(urllib.parse.urlparse(realm))
        existing = urllib.parse.parse_qs(url_parts[4])
        existing.update(query)
        url_parts[4] = urllib.parse.urlencode(existing, True)
        token_url = urllib.parse.urlunparse(url_parts)
        logger.debug('requesting bearer token: %s', token_url)

        r = await self._transport.request('get', token_url, headers=headers)
        if r.status >= 400:
            r.release()
            raise exceptions.AuthenticationError(
                'token auth attempt for %s failed' % self._base_url,
                r.status, token_url)
        body = await drc_transport.json_or_none(r)
        token = None
        if isinstance(body, dict):
            token = body.get('token') or body.get('access_token')
        if not token:
            raise exceptions.AuthenticationError(
                'authorization server did not include a token in the response',
                url=token_url)
        return token

    def invalidate(self, headers_used, www_authenticate=None):
        """
        Forget our credentials after a request made with ``headers_used``
        got a 401. If a newer login has already replaced them, do nothing.

        :param www_authenticate: The 401's ``WWW-Authenticate`` header; replaces the cached challenge.
        :type www_authenticate: str

        :rtype: bool
        :returns: Whether the state was reset.
        """
        if self.state.headers is not headers_used:
            return False
        if www_authenticate:
            try:
                self.state.challenge = parse_auth_challenge(www_authenticate)
            except exceptions.AuthenticationError as ex:
                logger.debug('ignoring unparseable WWW-Authenticate header: %s', ex)
        self.state.logged_in = False
        if self.state.actions is None:
            self.state.actions = frozenset()
        return True
