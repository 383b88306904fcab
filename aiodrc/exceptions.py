"""
Exception classes raised by aiodrc
"""

class DRCError(Exception):
    """
    Base exception class for all aiodrc errors
    """

class InvalidReferenceError(DRCError, ValueError):
    """
    Raised when an index, repository, tag or digest string can't be parsed
    """

class RegistryResponseError(DRCError):
    """
    Raised when the registry (or a host it redirected to) returns an
    unsuccessful HTTP status
    """
    def __init__(self, status, url, method='GET', message=None):
        super(RegistryResponseError, self).__init__()
        self.status = status
        self.url = str(url) if url is not None else None
        self.method = method
        self.message = message

    def __str__(self):
        s = '%s %s' % (self.method, self.url) if self.url else 'request'
        if self.status is not None:
            s += ' failed with status %d' % self.status
        else:
            s += ' failed'
        if self.message:
            s += ': ' + self.message
        return s

class NotFoundError(RegistryResponseError):
    """
    Raised on a 404 response
    """

class AuthenticationError(RegistryResponseError):
    """
    Raised when the registry rejects our credentials or auth negotiation fails
    """
    def __init__(self, message, status=None, url=None, method='GET'):
        super(AuthenticationError, self).__init__(status, url, method, message)

    def __str__(self):
        if self.url is None:
            return self.message
        return super(AuthenticationError, self).__str__()

class UnsupportedAuthSchemeError(AuthenticationError):
    """
    Raised when the registry challenges with an auth scheme we don't speak
    """
    def __init__(self, scheme, url=None):
        super(UnsupportedAuthSchemeError, self).__init__(
            'unsupported auth scheme: "%s"' % scheme, url=url)
        self.scheme = scheme

class BadDigestError(DRCError):
    """
    Raised when content doesn't hash to the digest it was expected to have
    """
    def __init__(self, got, expected, message=None):
        super(BadDigestError, self).__init__()
        self.got = got
        self.expected = expected
        self.message = message

    def __str__(self):
        if self.message:
            return self.message
        return 'expected digest %s, got %s' % (self.expected, self.got)

class UnsupportedDigestAlgorithmError(BadDigestError):
    """
    Raised when a digest names a hash algorithm we won't compute
    """
    def __init__(self, algorithm, digest=None):
        super(UnsupportedDigestAlgorithmError, self).__init__(
            algorithm, None,
            'unsupported digest algorithm "%s"%s' % (
                algorithm, (': ' + digest) if digest else ''))
        self.algorithm = algorithm

class ManifestVerificationError(DRCError):
    """
    Raised when a schema 1 manifest signature doesn't verify
    """
    def __init__(self, message, index=None):
        super(ManifestVerificationError, self).__init__()
        self.message = message
        self.index = index

    def __str__(self):
        if self.index is None:
            return self.message
        return 'signature %d: %s' % (self.index, self.message)

class DisallowedSignatureAlgorithmError(ManifestVerificationError):
    def __init__(self, alg, index=None):
        super(DisallowedSignatureAlgorithmError, self).__init__(
            'disallowed JWS signature algorithm: %s' % alg, index)
        self.alg = alg

class SignatureChainNotImplementedError(ManifestVerificationError):
    def __init__(self, index=None):
        super(SignatureChainNotImplementedError, self).__init__(
            'JWS verification with a certificate chain is not implemented',
            index)

class UnexpectedKeyTypeError(ManifestVerificationError):
    def __init__(self, got, expected, index=None):
        super(UnexpectedKeyTypeError, self).__init__(
            'expected key type %s, got %s' % (expected, got), index)
        self.got = got
        self.expected = expected

class InvalidContentError(DRCError):
    """
    Raised when a manifest is structurally malformed
    """

class TooManyRedirectsError(DRCError):
    """
    Raised when a blob request redirects more often than we're prepared to follow
    """
    def __init__(self, max_redirects, url):
        super(TooManyRedirectsError, self).__init__()
        self.max_redirects = max_redirects
        self.url = str(url)

    def __str__(self):
        return 'maximum number of redirects (%d) hit when requesting %s' % (
            self.max_redirects, self.url)

class DownloadError(DRCError):
    """
    Raised when a downloaded blob isn't the size the server said it would be
    """
    def __init__(self, got, expected):
        super(DownloadError, self).__init__()
        self.got = got
        self.expected = expected

    def __str__(self):
        if self.expected is None:
            return 'download ended early after %d bytes' % self.got
        return 'unexpected downloaded size: expected %d bytes, downloaded %d bytes' % (
            self.expected, self.got)
