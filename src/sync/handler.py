from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Dict, Optional

from common.cointrack import ApiError
from common.config import Settings, load_credentials
from common.log import configure_logging, get_logger
from portfolio.sync import SyncFailed
from session.manager import SessionManager


logger = get_logger(__name__)


async def run_once(
    *,
    settings: Optional[Settings] = None,
    manager: Optional[SessionManager] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Log in, report broker statuses and run one portfolio sync.

    - Resolves settings and credentials from env unless injected.
    - A login that needs a TOTP step-up stops early: a headless job cannot
      supply the second factor.
    - Broker failures show up as ERROR records; a failed sync is reported,
      not raised.

    Returns: {"ok": bool, "brokers": [...], "sync": {...}} or
    {"ok": False, "step_up": <purpose>} / {"ok": False, "error": <message>}.
    """
    if username is None or password is None:
        username, password = load_credentials()
    mgr = manager or SessionManager(settings or Settings.from_env())

    async with mgr:
        try:
            outcome = await mgr.auth.login(username, password)
        except ApiError as e:
            return {"ok": False, "error": e.message}

        if outcome.requires_step_up:
            logger.info("headless_sync_needs_step_up", purpose=outcome.purpose.value)
            mgr.step_up.abandon()
            return {"ok": False, "step_up": outcome.purpose.value}

        records = await mgr.brokers.get_all_statuses()
        result: Dict[str, Any] = {
            "ok": True,
            "brokers": [r.model_dump(mode="json") for r in records],
        }
        try:
            cycle = await mgr.sync.trigger_refresh()
        except SyncFailed as e:
            result["ok"] = False
            result["sync"] = e.cycle.model_dump(mode="json")
        else:
            result["sync"] = cycle.model_dump(mode="json") if cycle else None

        await mgr.auth.logout()
    return result


def main() -> int:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    result = asyncio.run(run_once(settings=settings))
    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
