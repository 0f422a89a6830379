import asyncio
import pytest

class EchoSocket:
	"""Stands in for a websockets connection: each send comes back after a delay

	Tests can also push frames (or an exception to raise) into .incoming
	as if the server had sent them.
	"""
	def __init__(self, delay=0.0):
		self.delay = delay
		self.sent = []
		self.closed = False
		self.incoming = asyncio.Queue()

	async def send(self, text):
		self.sent.append(text)
		if self.delay is not None:
			asyncio.get_running_loop().call_later(self.delay, self.incoming.put_nowait, text)

	def __aiter__(self):
		return self

	async def __anext__(self):
		msg = await self.incoming.get()
		if isinstance(msg, Exception): raise msg
		if msg is None: raise StopAsyncIteration
		return msg

	async def close(self):
		self.closed = True
		self.incoming.put_nowait(None)

def make_connector(sock=None, error=None):
	"""Build a replacement for websockets.connect that records its calls"""
	async def connect(url, origin=None):
		connect.calls.append((url, origin))
		if error: raise error
		return sock
	connect.calls = []
	return connect

@pytest.fixture
def echo():
	return EchoSocket()
