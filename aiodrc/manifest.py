"""
Manifest verification.

Schema 2 manifests are only digest-addressed: the ``Docker-Content-Digest``
header is checked against the raw response bytes.

Schema 1 manifests carry their own JWS signatures, turned inside out:
the ``signatures`` block sits *inside* the signed document. Each
signature's protected header holds ``formatLength`` (a byte offset into
the response body) and ``formatTail`` (base64url bytes to append), from
which the signing payload is rebuilt as ``body[:formatLength] + tail``.
That payload is what ``Docker-Content-Digest`` covers and what each
signature signs. See ``ParsePrettySignature`` in docker/libtrust.
"""

import base64
import dataclasses
import enum
import json
import logging

from jwcrypto import jwk, jws

from aiodrc import digest as drc_digest
from aiodrc import exceptions

logger = logging.getLogger(__name__)

SCHEMA1_MIMETYPE = 'application/vnd.docker.distribution.manifest.v1+json'
SCHEMA1_SIGNED_MIMETYPE = 'application/vnd.docker.distribution.manifest.v1+prettyjws'
SCHEMA2_MIMETYPE = 'application/vnd.docker.distribution.manifest.v2+json'
MANIFEST_LIST_MIMETYPE = 'application/vnd.docker.distribution.manifest.list.v2+json'
OCI_MANIFEST_MIMETYPE = 'application/vnd.oci.image.manifest.v1+json'
OCI_INDEX_MIMETYPE = 'application/vnd.oci.image.index.v1+json'

LIST_MIMETYPES = (MANIFEST_LIST_MIMETYPE, OCI_INDEX_MIMETYPE)

_disallowed_algs = ('none',)


class TrustPolicy(enum.Enum):
    '''
    ALL: every signature on a schema 1 manifest must verify
    ANY: at least one signature must verify (the rest may fail)
    '''
    ALL = 'all'
    ANY = 'any'


def accept_header(max_schema_version=2, accept_manifest_lists=False):
    accept = [SCHEMA1_SIGNED_MIMETYPE, SCHEMA1_MIMETYPE]
    if max_schema_version >= 2:
        accept = [SCHEMA2_MIMETYPE, OCI_MANIFEST_MIMETYPE] + accept
        if accept_manifest_lists:
            accept = list(LIST_MIMETYPES) + accept
    return ', '.join(accept)


def _to_bytes(s):
    return s if isinstance(s, bytes) else s.encode('utf-8')

def _urlsafe_b64encode(s):
    return base64.urlsafe_b64encode(_to_bytes(s)).rstrip(b'=').decode('utf-8')

def _pad64(s):
    return s + b'=' * (-len(s) % 4)

def _urlsafe_b64decode(s):
    return base64.urlsafe_b64decode(_pad64(_to_bytes(s)))

def _header(headers, name):
    if not headers:
        return None
    if hasattr(headers, 'getone'):
        return headers.get(name)
    lname = name.lower()
    for k, v in headers.items():
        if k.lower() == lname:
            return v
    return None


@dataclasses.dataclass(frozen=True)
class ManifestEnvelope:
    schema_version: int
    raw: bytes
    parsed: dict
    content_digest: str = None
    media_type: str = None

    @property
    def signatures(self):
        return self.parsed.get('signatures', []) if self.schema_version == 1 else []

    @property
    def is_list(self):
        return self.media_type in LIST_MIMETYPES or \
               self.parsed.get('mediaType') in LIST_MIMETYPES

    def layer_digests(self):
        if self.schema_version == 1:
            return [layer['blobSum'] for layer in self.parsed['fsLayers']]
        return [layer['digest'] for layer in self.parsed.get('layers', [])]


@dataclasses.dataclass(frozen=True)
class JWSSignature:
    alg: str
    protected64: str
    signature: str
    jwk: dict = None
    chain: list = None


@dataclasses.dataclass(frozen=True)
class ManifestJWS:
    payload: bytes
    signatures: list


def jws_from_manifest(manifest, body):
    """
    Pull the JWS out of a schema 1 manifest.

    :param manifest: Parsed manifest.
    :type manifest: dict

    :param body: Raw response body the manifest was parsed from. Whitespace and key order matter.
    :type body: bytes

    :rtype: :class:`ManifestJWS`
    """
    # pylint: disable=too-many-branches
    body = _to_bytes(body)
    sigs = manifest.get('signatures')
    if not isinstance(sigs, list) or not sigs:
        raise exceptions.ManifestVerificationError('manifest has no signatures')

    format_length = None
    format_tail = None
    signatures = []
    for i, sig in enumerate(sigs):
        if not isinstance(sig, dict) or not isinstance(sig.get('header'), dict):
            raise exceptions.InvalidContentError(
                'missing "signatures[%d].header"' % i)
        for field, value in (('header.alg', sig['header'].get('alg')),
                             ('protected', sig.get('protected')),
                             ('signature', sig.get('signature'))):
            if not isinstance(value, str):
                raise exceptions.InvalidContentError(
                    'invalid "signatures[%d].%s": %r' % (i, field, value))
        try:
            protected = json.loads(_urlsafe_b64decode(sig['protected']).decode('utf-8'))
        except ValueError as ex:
            raise exceptions.InvalidContentError(
                'could not parse manifest "signatures[%d].protected": %r' % (
                    i, sig.get('protected'))) from ex
        if not isinstance(protected, dict):
            raise exceptions.InvalidContentError(
                'invalid "signatures[%d].protected"' % i)

        fl = protected.get('formatLength')
        if not isinstance(fl, int) or isinstance(fl, bool) or fl < 0 or fl > len(body):
            raise exceptions.InvalidContentError(
                'invalid "formatLength" in "signatures[%d].protected": %r' % (i, fl))
        if format_length is None:
            format_length = fl
        elif fl != format_length:
            raise exceptions.InvalidContentError(
                'conflicting "formatLength" in "signatures[%d].protected": %r' % (i, fl))

        ft64 = protected.get('formatTail')
        if not ft64 or not isinstance(ft64, str):
            raise exceptions.InvalidContentError(
                'missing "formatTail" in "signatures[%d].protected"' % i)
        try:
            ft = _urlsafe_b64decode(ft64)
        except ValueError as ex:
            raise exceptions.InvalidContentError(
                'invalid "formatTail" in "signatures[%d].protected"' % i) from ex
        if format_tail is None:
            format_tail = ft
        elif ft != format_tail:
            raise exceptions.InvalidContentError(
                'conflicting "formatTail" in "signatures[%d].protected": %r' % (i, ft))

        signatures.append(JWSSignature(alg=sig['header'].get('alg'),
                                       protected64=sig['protected'],
                                       signature=sig['signature'],
                                       jwk=sig['header'].get('jwk'),
                                       chain=sig['header'].get('chain')))

    return ManifestJWS(payload=body[:format_length] + format_tail,
                       signatures=signatures)


def _import_key(expkey, index):
    if not isinstance(expkey, dict):
        raise exceptions.InvalidContentError(
            'invalid "signatures[%d].header.jwk"' % index)
    kty = expkey.get('kty')
    if kty == 'EC':
        if expkey.get('crv') not in ('P-256', 'P-384', 'P-521'):
            raise exceptions.UnexpectedKeyTypeError(expkey.get('crv'), 'P-256', index)
        members = ('crv', 'x', 'y')
    elif kty == 'RSA':
        members = ('n', 'e')
    else:
        raise exceptions.UnexpectedKeyTypeError(kty, 'EC', index)
    if any(not isinstance(expkey.get(m), str) for m in members):
        raise exceptions.InvalidContentError(
            'incomplete "signatures[%d].header.jwk"' % index)
    try:
        return jwk.JWK(kty=kty, **{m: expkey[m] for m in members})
    except (jwk.InvalidJWKValue, jwk.InvalidJWKType, ValueError) as ex:
        raise exceptions.InvalidContentError(
            'error in "signatures[%d].header.jwk": %s' % (index, ex)) from ex


def verify_jws(manifest_jws, trust_policy=TrustPolicy.ALL):
    """
    Verify the signatures of a schema 1 manifest.

    The ``none`` algorithm and certificate chains are refused whatever the
    trust policy.

    :param manifest_jws: Output of :func:`jws_from_manifest`.
    :type manifest_jws: :class:`ManifestJWS`

    :param trust_policy: Whether all or any of the signatures must verify.
    :type trust_policy: :class:`TrustPolicy`
    """
    payload64 = _urlsafe_b64encode(manifest_jws.payload)
    failures = []
    verified = 0
    for i, sig in enumerate(manifest_jws.signatures):
        if not sig.alg or sig.alg.lower() in _disallowed_algs:
            raise exceptions.DisallowedSignatureAlgorithmError(sig.alg, i)
        if sig.chain:
            raise exceptions.SignatureChainNotImplementedError(i)
        if sig.jwk is None:
            raise exceptions.ManifestVerificationError('no "jwk" in signature header', i)
        key = _import_key(sig.jwk, i)

        jwstoken = jws.JWS()
        try:
            jwstoken.deserialize('.'.join([sig.protected64, payload64, sig.signature]),
                                 key, sig.alg)
        except (jws.InvalidJWSSignature, jws.InvalidJWSObject) as ex:
            err = exceptions.ManifestVerificationError('signature failed verification', i)
            if trust_policy is TrustPolicy.ALL:
                raise err from ex
            logger.debug('%s (tolerated by trust policy %s)', err, trust_policy.value)
            failures.append(err)
        else:
            verified += 1

    if not verified:
        raise failures[0]


def _verify_content_digest(payload, dcd):
    expected = drc_digest.parse_digest(dcd, '"Docker-Content-Digest" header')
    try:
        return drc_digest.verify_digest(expected, payload)
    except exceptions.BadDigestError as ex:
        raise exceptions.BadDigestError(
            ex.got, ex.expected,
            'Docker-Content-Digest mismatch: header says %s, content hashes to %s' % (
                ex.expected, ex.got)) from None


def _check_schema1_structure(parsed, description):
    fs_layers = parsed.get('fsLayers')
    history = parsed.get('history')
    if not isinstance(fs_layers, list) or not isinstance(history, list):
        raise exceptions.InvalidContentError(
            'missing "fsLayers" or "history" in %s manifest' % description)
    if len(fs_layers) != len(history):
        raise exceptions.InvalidContentError(
            'length of history not equal to number of layers in %s manifest' % description)
    if not fs_layers:
        raise exceptions.InvalidContentError('no layers in %s manifest' % description)


def parse_manifest(raw, description='the'):
    try:
        parsed = json.loads(_to_bytes(raw).decode('utf-8'))
    except ValueError as ex:
        raise exceptions.InvalidContentError(
            'could not parse %s manifest: %s' % (description, ex)) from ex
    if not isinstance(parsed, dict):
        raise exceptions.InvalidContentError('%s manifest is not a JSON object' % description)
    return parsed


def verify_manifest(raw, parsed=None, headers=None,
                    description='the', trust_policy=TrustPolicy.ALL):
    """
    Verify a manifest response and wrap it up.

    :param raw: Response body.
    :type raw: bytes

    :param parsed: The body already parsed as JSON, if you have it.
    :type parsed: dict

    :param headers: Response headers. ``Docker-Content-Digest`` is checked if present.
    :type headers: mapping

    :param description: Names the manifest in error messages, e.g. ``busybox:latest``.
    :type description: str

    :rtype: :class:`ManifestEnvelope`
    """
    raw = _to_bytes(raw)
    if parsed is None:
        parsed = parse_manifest(raw, description)
    dcd = _header(headers, 'Docker-Content-Digest')
    schema_version = parsed.get('schemaVersion')

    if schema_version == 1:
        manifest_jws = jws_from_manifest(parsed, raw)
        payload = manifest_jws.payload
        if dcd:
            _verify_content_digest(payload, dcd)
        verify_jws(manifest_jws, trust_policy)
        _check_schema1_structure(parsed, description)
    elif schema_version == 2:
        payload = raw
        if dcd:
            _verify_content_digest(payload, dcd)
    else:
        raise exceptions.InvalidContentError(
            'unsupported schema version %r in %s manifest' % (schema_version, description))

    content_type = _header(headers, 'Content-Type')
    return ManifestEnvelope(schema_version=schema_version,
                            raw=raw,
                            parsed=parsed,
                            content_digest=dcd or drc_digest.hash_bytes(payload),
                            media_type=parsed.get('mediaType') or
                            (content_type.split(';')[0].strip() if content_type else None))


def digest_from_manifest_str(manifest_str):
    """
    Calculate the digest a registry would give a manifest.

    For schema 1 this is over the signing payload (the manifest minus its
    signatures), otherwise over the manifest bytes as given.

    :rtype: str
    """
    raw = _to_bytes(manifest_str)
    parsed = parse_manifest(raw)
    if parsed.get('schemaVersion') == 1:
        return drc_digest.hash_bytes(jws_from_manifest(parsed, raw).payload)
    return drc_digest.hash_bytes(raw)


def make_unsigned_manifest(name, tag, *digests):
    return json.dumps({
        'schemaVersion': 1,
        'name': name,
        'tag': tag,
        'architecture': 'amd64',
        'fsLayers': [{'blobSum': dgst} for dgst in digests],
        'history': [{'v1Compatibility': '{}'} for dgst in digests]
    }, sort_keys=True, indent=3)


def sign_manifest(manifest_json, key=None):
    """
    Sign a schema 1 manifest the way docker/libtrust does, appending a
    ``signatures`` block just before the final ``}``.

    :param manifest_json: Unsigned schema 1 manifest.
    :type manifest_json: str

    :param key: EC P-256 private key. A new one is generated if not given.
    :type key: jwcrypto.jwk.JWK

    :rtype: str
    :returns: The signed manifest.
    """
    content = _to_bytes(manifest_json)
    format_length = content.rfind(b'}')
    format_tail = content[format_length:]
    if key is None:
        key = jwk.JWK.generate(kty='EC', crv='P-256')
    jwstoken = jws.JWS(content)
    jkey = json.loads(key.export_public())
    # Docker expects 32 bytes for x and y
    jkey['x'] = _urlsafe_b64encode(_urlsafe_b64decode(jkey['x']).rjust(32, b'\0'))
    jkey['y'] = _urlsafe_b64encode(_urlsafe_b64decode(jkey['y']).rjust(32, b'\0'))
    jwstoken.add_signature(key, None, {
        'formatLength': format_length,
        'formatTail': _urlsafe_b64encode(format_tail)
    }, {
        'jwk': jkey,
        'alg': 'ES256'
    })
    sig = json.loads(jwstoken.serialize())
    sig.pop('payload', None)
    return (content[:format_length] +
            b', "signatures": [' + json.dumps(sig).encode('utf-8') + b']' +
            format_tail).decode('utf-8')
