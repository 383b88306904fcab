"""
Parsing of index names and image references, e.g.
``busybox``, ``google/python:3``, ``localhost:5000/blarg@sha256:...``.

The normalisation rules mimic Docker's own (``registry/config.go``):
repositories on the official index get the ``library`` namespace when
none is given, and ``index.docker.io`` is the same index as ``docker.io``.
"""

import dataclasses
import re

from aiodrc import exceptions

DEFAULT_INDEX_NAME = 'docker.io'
DEFAULT_TAG = 'latest'
DEFAULT_NAMESPACE = 'library'

# What `docker login` passes as the server when none is given.
DEFAULT_LOGIN_SERVERNAME = 'https://index.docker.io/v1/'

_valid_ns = re.compile(r'^[a-z0-9_-]{2,255}$')
_valid_name = re.compile(r'^[a-z0-9_.-]*$')
_valid_tag = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
_valid_digest = re.compile(r'^[A-Za-z0-9]+(?:[.+_-][A-Za-z0-9]+)*:[A-Za-z0-9=_-]+$')


@dataclasses.dataclass(frozen=True)
class IndexPolicy:
    '''
    Per-host registry quirks.

    registry_url: base URL serving the registry API, if not the index host itself
    index_url: base URL of the v1 index, if not the index host itself
    v1_standalone: force v1 "standalone" mode, ignoring the ping header
    '''
    registry_url: str = None
    index_url: str = None
    v1_standalone: bool = None


_index_policies = {
    DEFAULT_INDEX_NAME: IndexPolicy(
        registry_url='https://registry-1.docker.io',
        index_url='https://index.docker.io',
        v1_standalone=False,
    ),
    # quay.io says it's not standalone but behaves as if it were.
    'quay.io': IndexPolicy(v1_standalone=True),
}


def register_index_policy(name, policy):
    """
    Add or replace the quirks used for the index called ``name``.

    :param name: Index name, e.g. ``quay.io`` or ``localhost:5000``.
    :type name: str

    :param policy: Quirks for that index.
    :type policy: :class:`IndexPolicy`
    """
    _index_policies[name] = policy


def index_policy(name):
    return _index_policies.get(name, IndexPolicy())


def is_localhost(host):
    hostname = host.rsplit(':', 1)[0] if not host.endswith(']') else host
    return hostname in ('localhost', '127.0.0.1', '[::1]')


@dataclasses.dataclass(frozen=True)
class IndexInfo:
    name: str
    official: bool
    scheme: str = None

    def __str__(self):
        return (self.scheme + '://' + self.name) if self.scheme else self.name


@dataclasses.dataclass(frozen=True)
class Reference:
    index: IndexInfo
    official: bool
    remote_name: str
    local_name: str
    canonical_name: str
    tag: str = None
    digest: str = None

    @property
    def ref(self):
        '''
        the tag or digest, whichever is set, as used in manifest URLs
        '''
        return self.digest or self.tag

    def to_string(self):
        if self.digest:
            return self.canonical_name + '@' + self.digest
        if self.tag:
            return self.canonical_name + ':' + self.tag
        return self.canonical_name

    def __str__(self):
        return self.to_string()


def _looks_like_host(s):
    return '.' in s or ':' in s or s == 'localhost'


def parse_index(arg=None):
    """
    Parse an index name, optionally given as a URL.

    :param arg: e.g. ``docker.io``, ``https://quay.io``, ``localhost:5000``. Empty means the official index.
    :type arg: str

    :rtype: :class:`IndexInfo`
    """
    if not arg or arg == DEFAULT_LOGIN_SERVERNAME:
        return IndexInfo(name=DEFAULT_INDEX_NAME, official=True)

    scheme = None
    index_name = arg
    sep = arg.find('://')
    if sep != -1:
        scheme = arg[:sep]
        if scheme not in ('http', 'https'):
            raise exceptions.InvalidReferenceError(
                'invalid index scheme, must be "http" or "https": ' + arg)
        index_name = arg[sep + 3:]

    if not index_name:
        raise exceptions.InvalidReferenceError('invalid index, empty host: ' + arg)
    if index_name.endswith('/'):
        index_name = index_name[:-1]
    if not _looks_like_host(index_name.split('/', 1)[0]):
        raise exceptions.InvalidReferenceError(
            'invalid index, "%s" does not look like a valid host: %s' % (index_name, arg))
    if '/' in index_name:
        raise exceptions.InvalidReferenceError('invalid index, trailing repo: ' + arg)

    if index_name == 'index.' + DEFAULT_INDEX_NAME:
        index_name = DEFAULT_INDEX_NAME
    official = index_name == DEFAULT_INDEX_NAME

    if official and scheme == 'http':
        raise exceptions.InvalidReferenceError(
            'invalid index, HTTP to official index is disallowed: ' + arg)

    return IndexInfo(name=index_name, official=official, scheme=scheme)


def _validate_ns(ns):
    if not _valid_ns.match(ns):
        if len(ns) < 2 or len(ns) > 255:
            raise exceptions.InvalidReferenceError(
                'invalid repository namespace, must be between 2 and 255 characters: ' + ns)
        raise exceptions.InvalidReferenceError(
            'invalid repository namespace, may only contain [a-z0-9_-] characters: ' + ns)
    if ns[0] == '-' and ns[-1] == '-':
        raise exceptions.InvalidReferenceError(
            'invalid repository namespace, cannot start or end with a hyphen: ' + ns)
    if '--' in ns:
        raise exceptions.InvalidReferenceError(
            'invalid repository namespace, cannot contain consecutive hyphens: ' + ns)


def parse_repo(arg, default_index=None):
    """
    Parse a repository name: ``[INDEX/]NAMESPACE/NAME`` (no tag or digest).

    :param arg: Repository name.
    :type arg: str

    :param default_index: Index to use when ``arg`` doesn't start with one. Either an index name/URL (see :func:`parse_index`) or an :class:`IndexInfo`. Defaults to the official index.
    :type default_index: str or IndexInfo

    :rtype: :class:`Reference`
    """
    if '://' in arg:
        raise exceptions.InvalidReferenceError(
            'invalid repository name, cannot include a protocol schema: ' + arg)

    parts = arg.split('/', 1)
    if len(parts) == 1 or not _looks_like_host(parts[0]):
        if isinstance(default_index, IndexInfo):
            index = default_index
        else:
            index = parse_index(default_index)
        remote_name = arg
    else:
        index = parse_index(parts[0])
        remote_name = parts[1]

    name_parts = remote_name.split('/', 1)
    if len(name_parts) == 2:
        ns, name = name_parts
        _validate_ns(ns)
    else:
        name = remote_name
        ns = DEFAULT_NAMESPACE if index.official else None

    if not name or not _valid_name.match(name):
        raise exceptions.InvalidReferenceError(
            'invalid repository name, may only contain [a-z0-9_.-] characters: ' + name)

    official = False
    if index.official:
        remote_name = ns + '/' + name
        if ns == DEFAULT_NAMESPACE:
            official = True
            local_name = name
        else:
            local_name = remote_name
        canonical_name = DEFAULT_INDEX_NAME + '/' + local_name
    else:
        remote_name = (ns + '/' + name) if ns else name
        local_name = index.name + '/' + remote_name
        canonical_name = local_name

    return Reference(index=index,
                     official=official,
                     remote_name=remote_name,
                     local_name=local_name,
                     canonical_name=canonical_name)


def parse_repo_and_ref(arg, default_index=None):
    """
    Parse a repository name with an optional tag or digest:
    ``[INDEX/]NAMESPACE/NAME[:TAG|@DIGEST]``.

    The tag defaults to ``latest`` when neither a tag nor a digest is given.
    Exactly one of ``tag`` and ``digest`` is set on the result.

    :rtype: :class:`Reference`
    """
    tag = None
    digest = None
    at = arg.rfind('@')
    if at != -1:
        repo = arg[:at]
        digest = arg[at + 1:]
        if not _valid_digest.match(digest):
            raise exceptions.InvalidReferenceError(
                'invalid digest, must be of the form "algorithm:hex": ' + digest)
    else:
        colon = arg.rfind(':')
        slash = arg.rfind('/')
        if colon != -1 and colon > slash:
            repo = arg[:colon]
            tag = arg[colon + 1:]
            if not _valid_tag.match(tag):
                raise exceptions.InvalidReferenceError('invalid tag: ' + tag)
        else:
            repo = arg
            tag = DEFAULT_TAG

    return dataclasses.replace(parse_repo(repo, default_index),
                               tag=tag, digest=digest)


def url_from_index(index, scheme=None):
    """
    Base URL (no trailing slash) of the registry API for an index.

    Localhost indexes default to HTTP; everything else to HTTPS.
    """
    policy = index_policy(index.name)
    if policy.registry_url:
        return policy.registry_url
    scheme = scheme or index.scheme or ('http' if is_localhost(index.name) else 'https')
    return scheme + '://' + index.name
