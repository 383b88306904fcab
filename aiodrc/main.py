#pylint: disable=wrong-import-position,wrong-import-order,superfluous-parens
import asyncio
import os
import argparse
import dataclasses
import json
import logging
import sys
import traceback
import errno
import tqdm

import aiodrc
import aiodrc.exceptions

_choices = ['ping',
            'parse',
            'list-tags',
            'get-manifest',
            'manifest-digest',
            'head-blob',
            'pull-blob',
            'push-blob',
            'put-manifest']

_parser = argparse.ArgumentParser(prog='aiodrc')
_subparsers = _parser.add_subparsers(dest='op')
for c in _choices:
    sp = _subparsers.add_parser(c)
    if c != 'manifest-digest':
        sp.add_argument("repo")
    if c not in ('ping', 'parse', 'list-tags', 'get-manifest'):
        sp.add_argument('args', nargs='*')

_exit_codes = [
    (aiodrc.exceptions.AuthenticationError, errno.EACCES),
    (aiodrc.exceptions.NotFoundError, errno.ENOENT),
    (aiodrc.exceptions.InvalidReferenceError, errno.EINVAL),
    (aiodrc.exceptions.BadDigestError, errno.EBADMSG),
    (aiodrc.exceptions.ManifestVerificationError, errno.EBADMSG),
    (aiodrc.exceptions.InvalidContentError, errno.EBADMSG),
    (aiodrc.exceptions.DownloadError, errno.EBADMSG),
]

def _read_input(args):
    if args:
        with open(args[0], 'rb') as f:
            return f.read()
    return getattr(sys.stdin, 'buffer', sys.stdin).read()

def _make_progress(environ):
    drc_progress = environ.get('DRC_PROGRESS')
    if drc_progress == '1' or (drc_progress != '0' and sys.stderr.isatty()):
        bars = {}
        def progress(dgst, chunk, size):
            if dgst not in bars:
                bars[dgst] = tqdm.tqdm(desc=dgst[7:15],
                                       total=size,
                                       unit='B',
                                       unit_scale=True,
                                       leave=True)
            if chunk:
                bars[dgst].update(len(chunk))
            if bars[dgst].total is not None and bars[dgst].n >= bars[dgst].total:
                bars[dgst].close()
                del bars[dgst]
        return progress
    return None

def _client_kwargs(environ):
    drc_skiptlsverify = environ.get('DRC_SKIPTLSVERIFY')
    if drc_skiptlsverify == '1':
        drc_tlsverify = False
    else:
        drc_tlsverify = environ.get('DRC_TLSVERIFY', True)
    return {
        'username': environ.get('DRC_USERNAME'),
        'password': environ.get('DRC_PASSWORD'),
        'token': environ.get('DRC_TOKEN'),
        'insecure': environ.get('DRC_INSECURE') == '1',
        'tlsverify': drc_tlsverify,
    }

# pylint: disable=too-many-statements
async def doit(args, environ):
    logging.basicConfig(level=environ.get('DRC_LOG_LEVEL', 'WARNING').upper())
    progress = _make_progress(environ)
    chunk_size = int(environ.get('DRC_CHUNK_SIZE', 8192))

    args = _parser.parse_args(args)
    if args.op is None:
        _parser.error('an operation is required')

    async def _offline():
        if args.op == 'parse':
            print(json.dumps(dataclasses.asdict(aiodrc.parse_repo_and_ref(args.repo)),
                             indent=2))
        elif args.op == 'manifest-digest':
            print(aiodrc.digest_from_manifest_str(_read_input(args.args)))

    async def _doit(client):
        # pylint: disable=too-many-branches
        if args.op == 'ping':
            body, _ = await client.ping()
            print(json.dumps(body))

        elif args.op == 'list-tags':
            async for tag in client.iter_tags():
                print(tag)

        elif args.op == 'get-manifest':
            envelope = await client.get_manifest()
            sys.stdout.write(envelope.raw.decode('utf-8'))
            print()

        elif args.op == 'head-blob':
            if not args.args:
                _parser.error('too few arguments')
            for dgst in args.args:
                chain = await client.head_blob(dgst)
                print(dgst + ' ' + chain[-1].headers.get('Content-Length', '-'))

        elif args.op == 'pull-blob':
            if not args.args:
                _parser.error('too few arguments')
            _stdout = getattr(sys.stdout, 'buffer', sys.stdout)
            for dgst in args.args:
                stream, _ = await client.create_blob_read_stream(dgst)
                async with stream:
                    size = stream.content_length
                    if progress:
                        progress(dgst, b'', size)
                    async for chunk in stream.iter_chunked(chunk_size):
                        if progress:
                            progress(dgst, chunk, size)
                        _stdout.write(chunk)

        elif args.op == 'push-blob':
            if len(args.args) != 1:
                _parser.error('expected one file to push')
            filename = args.args[0]
            dgst = aiodrc.hash_file(filename)
            with open(filename, 'rb') as f:
                await client.blob_upload(f, dgst, progress=progress)
            print(dgst)

        elif args.op == 'put-manifest':
            if len(args.args) > 1:
                _parser.error('too many arguments')
            dgst, _ = await client.put_manifest(_read_input(args.args))
            print(dgst)

    try:
        if args.op in ('parse', 'manifest-digest'):
            await _offline()
        else:
            async with aiodrc.RegistryClient(args.repo, **_client_kwargs(environ)) as client:
                await _doit(client)
        return 0
    except aiodrc.exceptions.DRCError as ex:
        for cls, code in _exit_codes:
            if isinstance(ex, cls):
                traceback.print_exc()
                return code
        raise

def main():
    sys.exit(asyncio.run(doit(sys.argv[1:], os.environ)))
