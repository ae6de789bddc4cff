"""Create the first admin account and print its access token.

Usage: python -m app.scripts.bootstrap_admin admin@example.com [--name "Ops"]
"""

import argparse
import asyncio
import sys

from app.core.config import get_settings
from app.core.exceptions import AppError
from app.core.logging import configure_logging, get_logger
from app.core.security import create_access_token
from app.services.gateway import build_gateway

log = get_logger(__name__)


async def main(email: str, name: str) -> int:
    settings = get_settings()
    if settings.ledger_backend == "memory":
        log.error("bootstrap_admin", msg="memory backend does not persist; set LEDGER_BACKEND=mongo")
        return 1
    gateway = build_gateway(settings)
    await gateway.start()
    try:
        account = await gateway.accounts.create(email, name=name, role="admin")
    except AppError as exc:
        log.error("bootstrap_admin", msg=exc.message, code=exc.code)
        return 1
    finally:
        await gateway.close()
    log.info("bootstrap_admin", msg="Admin created", account_id=account.id)
    print(create_access_token(account.id))
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("email")
    parser.add_argument("--name", default="")
    args = parser.parse_args()
    configure_logging(debug=get_settings().debug)
    sys.exit(asyncio.run(main(args.email, args.name)))
