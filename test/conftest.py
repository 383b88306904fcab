import base64
import hashlib
import itertools
import json
import uuid

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

import aiodrc

REPO = 'test/repo'

def _sha256(data):
    return 'sha256:' + hashlib.sha256(data).hexdigest()

def _errors(status, code, message):
    return web.json_response({'errors': [{'code': code, 'message': message}]},
                             status=status)

def pytest_configure(config):
    # pylint: disable=unused-argument
    pytest.blob1 = b'hello, registry\n' * 100
    pytest.blob1_hash = _sha256(pytest.blob1)
    pytest.blob2 = bytes(range(256)) * 300
    pytest.blob2_hash = _sha256(pytest.blob2)
    pytest.repo = REPO


class FakeRegistry(object):
    # pylint: disable=too-many-instance-attributes
    """
    Just enough of a v2 (and v1) registry to test against.

    auth: None, 'basic', 'bearer' or any other string (used as the
    challenge scheme as-is).
    """
    def __init__(self):
        self.auth = None
        self.username = 'fred'
        self.password = 'somepassword'
        self.tokens = {}
        self.token_requests = []
        self.requests = []
        self.blobs = {}
        self.manifests = {}
        self.tags = {}
        self.blob_redirects = 0
        self.storage_url = None
        self.corrupt_blobs = False
        self.dcd_override = None
        self.v1_standalone = False
        self.v2 = True
        self.url = None
        self.host = None
        self._counter = itertools.count(1)

    def add_blob(self, data):
        dgst = _sha256(data)
        self.blobs[dgst] = data
        return dgst

    def add_manifest(self, repo, ref, raw, media_type, dcd):
        raw = raw.encode('utf-8') if isinstance(raw, str) else raw
        self.manifests[(repo, ref)] = (raw, media_type, dcd)
        self.manifests[(repo, dcd)] = (raw, media_type, dcd)
        if ':' not in ref:
            tags = self.tags.setdefault(repo, [])
            if ref not in tags:
                tags.append(ref)

    def revoke_tokens(self):
        self.tokens = {}

    def requests_to(self, path_prefix):
        return [r for r in self.requests if r[1].startswith(path_prefix)]

    def _challenge(self, request, scope):
        if self.auth == 'basic':
            return 'Basic realm="fake registry"'
        if self.auth == 'bearer':
            realm = str(request.url.origin()) + '/token'
            s = 'Bearer realm="%s",service="fake-registry"' % realm
            if scope:
                s += ',scope="%s"' % scope
            return s
        return '%s realm="fake"' % self.auth

    def _check_auth(self, request, repo=None, action='pull'):
        if self.auth is None:
            return
        header = request.headers.get('Authorization', '')
        if self.auth == 'basic':
            expected = 'Basic ' + base64.b64encode(
                (self.username + ':' + self.password).encode('utf-8')).decode('utf-8')
            if header == expected:
                return
        elif self.auth == 'bearer' and header.startswith('Bearer '):
            grant = self.tokens.get(header[len('Bearer '):])
            if grant is not None and (repo is None or action in grant.get(repo, ())):
                return
        scope = 'repository:%s:%s' % (repo, action) if repo else None
        raise web.HTTPUnauthorized(
            headers={'WWW-Authenticate': self._challenge(request, scope),
                     'Docker-Distribution-Api-Version': 'registry/2.0'},
            text=json.dumps({'errors': [{'code': 'UNAUTHORIZED',
                                         'message': 'authentication required'}]}),
            content_type='application/json')

    @web.middleware
    async def _record(self, request, handler):
        self.requests.append((request.method, request.path_qs,
                              request.headers.get('Authorization')))
        return await handler(request)

    async def _token(self, request):
        self.token_requests.append((dict(request.query),
                                    request.headers.get('Authorization')))
        if 'account' in request.query:
            expected = 'Basic ' + base64.b64encode(
                (self.username + ':' + self.password).encode('utf-8')).decode('utf-8')
            if request.headers.get('Authorization') != expected:
                return web.json_response({'details': 'incorrect username or password'},
                                         status=401)
        grant = {}
        for scope in request.query.getall('scope', []):
            _, repo, actions = scope.split(':')
            grant[repo] = set(actions.split(','))
        token = 'token-%d' % next(self._counter)
        self.tokens[token] = grant
        return web.json_response({'token': token})

    async def _ping(self, request):
        if not self.v2:
            raise web.HTTPNotFound()
        self._check_auth(request)
        return web.json_response({}, headers={'Docker-Distribution-Api-Version': 'registry/2.0'})

    async def _tags(self, request):
        name = request.match_info['name']
        self._check_auth(request, name)
        if name not in self.tags:
            return _errors(404, 'NAME_UNKNOWN', 'repository name not known to registry')
        tags = sorted(self.tags[name])
        last = request.query.get('last')
        if last:
            tags = [t for t in tags if t > last]
        headers = {}
        if 'n' in request.query:
            n = int(request.query['n'])
            if len(tags) > n:
                tags = tags[:n]
                headers['Link'] = '</v2/%s/tags/list?n=%d&last=%s>; rel="next"' % (
                    name, n, tags[-1])
        return web.json_response({'name': name, 'tags': tags}, headers=headers)

    async def _get_manifest(self, request):
        name = request.match_info['name']
        self._check_auth(request, name)
        found = self.manifests.get((name, request.match_info['ref']))
        if found is None:
            return _errors(404, 'MANIFEST_UNKNOWN', 'manifest unknown')
        raw, media_type, dcd = found
        return web.Response(body=raw, headers={
            'Content-Type': media_type,
            'Docker-Content-Digest': self.dcd_override or dcd,
        })

    async def _put_manifest(self, request):
        name = request.match_info['name']
        self._check_auth(request, name, 'push')
        raw = await request.read()
        parsed = json.loads(raw.decode('utf-8'))
        if parsed.get('schemaVersion') == 1:
            dcd = aiodrc.digest_from_manifest_str(raw)
        else:
            dcd = _sha256(raw)
        ref = request.match_info['ref']
        self.add_manifest(name, ref, raw, request.headers['Content-Type'], dcd)
        return web.Response(status=201, headers={
            'Docker-Content-Digest': self.dcd_override or dcd,
            'Location': '/v2/%s/manifests/%s' % (name, dcd),
        })

    def _blob_response(self, dgst):
        data = self.blobs.get(dgst)
        if data is None:
            return _errors(404, 'BLOB_UNKNOWN', 'blob unknown to registry')
        if self.corrupt_blobs:
            data = bytes([data[0] ^ 1]) + data[1:]
        return web.Response(body=data,
                            content_type='application/octet-stream',
                            headers={'Docker-Content-Digest': self.dcd_override or dgst})

    async def _blob(self, request):
        name = request.match_info['name']
        self._check_auth(request, name)
        dgst = request.match_info['digest']
        if self.blob_redirects and dgst in self.blobs:
            base = self.storage_url or ''
            location = '%s/storage/%d/%s' % (base, self.blob_redirects - 1, dgst)
            return web.Response(status=307, headers={'Location': location,
                                                     'Docker-Content-Digest': dgst})
        return self._blob_response(dgst)

    async def _storage(self, request):
        remaining = int(request.match_info['remaining'])
        dgst = request.match_info['digest']
        if remaining > 0:
            raise web.HTTPFound('/storage/%d/%s' % (remaining - 1, dgst))
        return self._blob_response(dgst)

    async def _start_upload(self, request):
        name = request.match_info['name']
        self._check_auth(request, name, 'push')
        upload_id = str(uuid.uuid4())
        return web.Response(status=202, headers={
            'Location': '/v2/%s/blobs/uploads/%s?_state=abc' % (name, upload_id),
            'Docker-Upload-UUID': upload_id,
        })

    async def _finish_upload(self, request):
        name = request.match_info['name']
        self._check_auth(request, name, 'push')
        if request.query.get('_state') != 'abc':
            return _errors(400, 'BLOB_UPLOAD_INVALID', 'lost upload state')
        dgst = request.query.get('digest')
        data = await request.read()
        if _sha256(data) != dgst:
            return _errors(400, 'DIGEST_INVALID', 'provided digest did not match uploaded content')
        self.blobs[dgst] = data
        return web.Response(status=201, headers={
            'Docker-Content-Digest': dgst,
            'Location': '/v2/%s/blobs/%s' % (name, dgst),
        })

    async def _v1_ping(self, request):
        # pylint: disable=unused-argument
        return web.json_response(True, headers={
            'X-Docker-Registry-Standalone': 'True' if self.v1_standalone else 'False'
        })

    def _v1_check_token(self, request):
        if not self.v1_standalone and \
           request.headers.get('Authorization') != 'Token signature=abc,repository="test/repo"':
            raise web.HTTPUnauthorized()

    async def _v1_images(self, request):
        if request.headers.get('X-Docker-Token') != 'true':
            raise web.HTTPBadRequest()
        return web.json_response([{'id': 'img2'}, {'id': 'img1'}], headers={
            'X-Docker-Token': 'signature=abc,repository="test/repo"',
            'X-Docker-Endpoints': '%s, mirror.example.com' % self.host,
        })

    async def _v1_tags(self, request):
        self._v1_check_token(request)
        return web.json_response({'latest': 'img2'})

    async def _v1_tag(self, request):
        self._v1_check_token(request)
        if request.match_info['tag'] != 'latest':
            return web.json_response({'error': 'Tag not found'}, status=404)
        return web.json_response('img2')

    async def _v1_ancestry(self, request):
        self._v1_check_token(request)
        return web.json_response(['img2', 'img1'])

    async def _v1_json(self, request):
        self._v1_check_token(request)
        return web.json_response({'id': request.match_info['id']},
                                 headers={'X-Docker-Size': '5'})

    async def _v1_layer(self, request):
        self._v1_check_token(request)
        if request.match_info['id'] == 'img2':
            raise web.HTTPFound('/v1/images/img1/layer')
        return web.Response(body=b'layer')

    def make_app(self):
        app = web.Application(middlewares=[self._record])
        app.router.add_get('/token', self._token)
        app.router.add_get('/v2/', self._ping)
        app.router.add_get('/v2/{name:.+}/tags/list', self._tags)
        app.router.add_get('/v2/{name:.+}/manifests/{ref}', self._get_manifest)
        app.router.add_put('/v2/{name:.+}/manifests/{ref}', self._put_manifest)
        app.router.add_post('/v2/{name:.+}/blobs/uploads/', self._start_upload)
        app.router.add_put('/v2/{name:.+}/blobs/uploads/{id}', self._finish_upload)
        app.router.add_get('/v2/{name:.+}/blobs/{digest}', self._blob)
        app.router.add_get('/storage/{remaining}/{digest}', self._storage)
        app.router.add_get('/v1/_ping', self._v1_ping)
        app.router.add_get('/v1/repositories/{name:.+}/images', self._v1_images)
        app.router.add_get('/v1/repositories/{name:.+}/tags', self._v1_tags)
        app.router.add_get('/v1/repositories/{name:.+}/tags/{tag}', self._v1_tag)
        app.router.add_get('/v1/images/{id}/ancestry', self._v1_ancestry)
        app.router.add_get('/v1/images/{id}/json', self._v1_json)
        app.router.add_get('/v1/images/{id}/layer', self._v1_layer)
        return app


async def _serve(app):
    server = TestServer(app)
    await server.start_server()
    return server

@pytest_asyncio.fixture
async def registry():
    fake = FakeRegistry()
    server = await _serve(fake.make_app())
    fake.url = str(server.make_url('')).rstrip('/')
    fake.host = '%s:%d' % (server.host, server.port)
    yield fake
    await server.close()

@pytest_asyncio.fixture
async def storage(registry):
    '''
    Second server (so a different port) serving the registry's blobs,
    standing in for external blob storage.
    '''
    other = FakeRegistry()
    other.blobs = registry.blobs
    server = await _serve(other.make_app())
    other.url = str(server.make_url('')).rstrip('/')
    registry.storage_url = other.url
    yield other
    await server.close()

@pytest_asyncio.fixture
async def client(registry):
    c = aiodrc.RegistryClient(registry.host + '/' + REPO)
    yield c
    await c.close()
