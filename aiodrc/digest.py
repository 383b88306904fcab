"""
Content digests in ``algorithm:hex`` wire form, shared by manifest and
blob verification.
"""

import collections
import hashlib
import logging

from aiodrc import exceptions

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ('sha256', 'sha384', 'sha512')


class Digest(collections.namedtuple('Digest', ['algorithm', 'hex_value'])):
    __slots__ = ()

    def __str__(self):
        return self.algorithm + ':' + self.hex_value

    def hasher(self):
        return hashlib.new(self.algorithm)


def parse_digest(s, what='digest'):
    """
    Parse an ``algorithm:hex`` digest.

    :param s: Digest string, e.g. the value of a ``Docker-Content-Digest`` header.
    :type s: str

    :param what: Describes where the digest came from, for error messages.
    :type what: str

    :rtype: :class:`Digest`
    """
    if not s:
        raise exceptions.BadDigestError(None, None, 'missing %s' % what)
    algorithm, sep, hex_value = s.partition(':')
    if not sep or not algorithm or not hex_value:
        raise exceptions.BadDigestError(None, s, 'could not parse %s: %s' % (what, s))
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise exceptions.UnsupportedDigestAlgorithmError(algorithm, s)
    return Digest(algorithm, hex_value.lower())


def hash_bytes(buf, algorithm='sha256'):
    """
    Hash bytes using the same method the registry uses (SHA-256 by default).

    :param buf: Bytes to hash
    :type buf: binary str

    :rtype: str
    :returns: Hex-encoded hash of the bytes, prefixed by the algorithm (e.g. ``sha256:``)
    """
    h = hashlib.new(algorithm)
    h.update(buf)
    return algorithm + ':' + h.hexdigest()


def hash_file(filename, algorithm='sha256'):
    """
    Hash a file using the same method the registry uses (SHA-256 by default).

    :param filename: Name of file to hash
    :type filename: str

    :rtype: str
    :returns: Hex-encoded hash of file's content, prefixed by the algorithm
    """
    h = hashlib.new(algorithm)
    with open(filename, 'rb') as f:
        for chunk in iter(lambda: f.read(8192), b''):
            h.update(chunk)
    return algorithm + ':' + h.hexdigest()


class DigestVerifier(object):
    """
    Running hash over content received in chunks, checked against an
    expected digest once all the content has been seen.
    """
    def __init__(self, expected):
        if not isinstance(expected, Digest):
            expected = parse_digest(expected)
        self.expected = expected
        self._hash = expected.hasher()
        self.num_bytes = 0

    def update(self, chunk):
        self._hash.update(chunk)
        self.num_bytes += len(chunk)

    @property
    def got(self):
        return Digest(self.expected.algorithm, self._hash.hexdigest())

    def verify(self):
        got = self.got
        if got.hex_value != self.expected.hex_value:
            logger.debug('digest mismatch: expected %s, computed %s', self.expected, got)
            raise exceptions.BadDigestError(str(got), str(self.expected))
        return got


def verify_digest(expected, data):
    """
    Check ``data`` hashes to ``expected`` (an ``algorithm:hex`` string or
    :class:`Digest`). Raises :class:`aiodrc.exceptions.BadDigestError` if not.

    :rtype: :class:`Digest`
    """
    v = DigestVerifier(expected)
    v.update(data)
    return v.verify()
