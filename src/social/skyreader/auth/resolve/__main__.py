from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.skyreader.auth.atproto.errors import AuthFlowException
from social.skyreader.auth.atproto.pds import fetch_auth_server_metadata
from social.skyreader.auth.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="resolve", description="Resolve handles and DIDs to their PDS"
    )
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--default-suffix",
        default="bsky.social",
        help="Domain appended to handles that contain no dot.",
    )
    parser.add_argument(
        "--metadata",
        action="store_true",
        help="Also discover the authorization server of each PDS.",
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=10)
    ) as session:
        for subject in subjects:
            try:
                resolved = await resolve_subject(
                    session,
                    args["plc_hostname"],
                    subject,
                    default_suffix=args["default_suffix"],
                )
                print(f"resolved {resolved}")
                if args.get("metadata"):
                    metadata = await fetch_auth_server_metadata(session, resolved.pds)
                    print(f"authorization server {metadata}")
            except AuthFlowException as e:
                logger.error("could not resolve %s: %s", subject, e)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
