import sys
import asyncio

from socketconsole.logging import set_debug
from socketconsole.supervisor import ConsoleArgs, Mode, ProcessSupervisor


async def main(args: ConsoleArgs) -> int:
    supervisor = ProcessSupervisor(
        Mode.LISTEN,
        args.address,
        args.port,
        half_close=args.half_close,
        chunk_size=args.chunk_size,
    )
    return await supervisor.run()


def cli():
    args = ConsoleArgs(
        underscores_to_dashes=True,
        description="Wait for one peer and bridge it with stdin/stdout.",
    ).parse_args()
    set_debug(args.debug)
    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    cli()
