"""
Run the confirmation reconciler against a gateway return URL.

Usage:
    tpay-confirm "https://school.example/payments/return?paymentId=anon:1700000000000"
    tpay-confirm "<return url>" --api-base https://api.school.example --max-attempts 10
"""
import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

import httpx

from .config import settings
from .log import configure_logging
from .reconciler import (
    ConfirmationReconciler,
    ConfirmationView,
    PaymentsApiClient,
    ReturnParams,
    Step,
    render_confirmation,
)


async def confirm(return_url: str, api_base: str, interval: float, max_attempts: int) -> ConfirmationView:
    params = ReturnParams.from_url(return_url)
    async with httpx.AsyncClient(timeout=20.0) as client:
        reconciler = ConfirmationReconciler(
            PaymentsApiClient(api_base, client=client),
            params,
            interval=interval,
            max_attempts=max_attempts,
        )
        handle = reconciler.start()
        try:
            await handle.wait()
        finally:
            reconciler.close()
    return render_confirmation(reconciler.state)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Confirm a TPay payment after the gateway redirect")
    parser.add_argument("return_url", help="URL the gateway redirected the customer to")
    parser.add_argument("--api-base", default=settings.api_base_url, help="Payments API base URL")
    parser.add_argument("--interval", type=float, default=settings.poll_interval_seconds,
                        help="Seconds between attempts (default: %(default)s)")
    parser.add_argument("--max-attempts", type=int, default=settings.poll_max_attempts,
                        help="Attempt budget (default: %(default)s)")
    args = parser.parse_args(argv)

    configure_logging(settings.log_level, settings.log_json, cache=settings.log_cache_loggers)
    try:
        view = asyncio.run(confirm(args.return_url, args.api_base, args.interval, args.max_attempts))
    except KeyboardInterrupt:
        print("cancelled", file=sys.stderr)
        return 130

    print(json.dumps(view.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False))
    return 0 if view.step == Step.SUCCESS else 1


if __name__ == "__main__":
    sys.exit(main())
