import string
import random
import asyncio
from tqdm import tqdm

from socketconsole.relay import RelayEngine
from socketconsole.streams import DuplexConnection


PACKET_SIZE = 1024 ** 2
TOTAL_SIZE = 256 * PACKET_SIZE


class RandomInput:
    def __init__(self, total: int):
        self._data = "".join(random.choices(string.ascii_letters, k=PACKET_SIZE)).encode()
        self._remaining = total

    async def read(self, n: int) -> bytes:
        n = min(n, self._remaining, PACKET_SIZE)
        self._remaining -= n
        return self._data[:n]


class NullOutput:
    def write(self, data: bytes):
        pass

    async def drain(self):
        pass


async def sink(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    with tqdm(desc="Bytes received", total=TOTAL_SIZE, unit="B", unit_scale=True) as pbar:
        while True:
            data = await reader.read(PACKET_SIZE)
            if not data:
                break
            pbar.update(len(data))
    writer.close()
    await writer.wait_closed()


async def main():
    server = await asyncio.start_server(sink, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    connection = DuplexConnection(reader, writer)

    # Half-close so the session lasts until the sink has seen everything.
    engine = RelayEngine(chunk_size=64 * 1024, half_close=True)
    result = await engine.run(connection, RandomInput(TOTAL_SIZE), NullOutput())

    await connection.close()
    server.close()
    await server.wait_closed()
    print(f"{result.outcome.name}: {result.bytes_sent} bytes sent")


if __name__ == "__main__":
    asyncio.run(main())
