import asyncio
import sys

from aiodrc import RegistryClient, hash_bytes

async def do():
	async with RegistryClient('localhost:5000/fred/datalogger:may15-readings') as client:
		with open('logger.dat', 'rb') as f:
			data = f.read()
		dgst = await client.blob_upload(data, hash_bytes(data))

		stream, _ = await client.create_blob_read_stream(dgst)
		async with stream:
			async for chunk in stream.iter_chunked(8192):
				sys.stdout.buffer.write(chunk)

asyncio.run(do())
