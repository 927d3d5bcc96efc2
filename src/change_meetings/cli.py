"""CLI: создание/отмена встреч по изменению для нескольких customers.

Коды выхода:
  0: все customers успешно
  1: есть per-customer ошибки
  2: ошибка валидации / входных данных
  3: критическая ошибка хранилища метаданных
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable, Sequence

from change_meetings.common.config import get_settings
from change_meetings.common.errors import AppError, StoreError, StoreWriteError
from change_meetings.common.logging import get_project_logger, setup_logging
from change_meetings.domain.outcomes import BatchResult
from change_meetings.services.orchestrator import (
    MeetingOrchestrator,
    build_orchestrator,
    create_meeting_invite,
)
from change_meetings.tenancy.extraction import parse_customer_codes_arg

log = get_project_logger()

EXIT_OK = 0
EXIT_CUSTOMER_FAILURES = 1
EXIT_VALIDATION = 2
EXIT_STORE_CRITICAL = 3


def _build_parser() -> argparse.ArgumentParser:
    s = get_settings()
    parser = argparse.ArgumentParser(prog="change-meetings", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="action", required=True)

    create = sub.add_parser(
        "create-multi-customer-meeting-invite",
        help="Создать Teams-встречи для всех customers изменения",
    )
    create.add_argument("--topic-name", default=s.calendar_topic_name)
    create.add_argument("--json-metadata", required=True, help="changeId или ключ в хранилище")
    create.add_argument("--sender-email", default=s.meeting_organizer_email)
    create.add_argument("--customer-codes", default="", help="CSV; пусто = из метаданных")
    create.add_argument("--dry-run", action="store_true")
    create.add_argument("--force-update", action="store_true")

    legacy = sub.add_parser(
        "create-meeting-invite",
        help="[deprecated] используйте create-multi-customer-meeting-invite",
    )
    legacy.add_argument("--customer-code", required=True)
    legacy.add_argument("--topic-name", default=s.calendar_topic_name)
    legacy.add_argument("--json-metadata", required=True)
    legacy.add_argument("--sender-email", default=s.meeting_organizer_email)
    legacy.add_argument("--dry-run", action="store_true")
    legacy.add_argument("--force-update", action="store_true")

    cancel = sub.add_parser(
        "cancel-multi-customer-meeting",
        help="Отменить встречи изменения у всех customers",
    )
    cancel.add_argument("--json-metadata", required=True)
    cancel.add_argument("--customer-codes", default="")
    cancel.add_argument("--dry-run", action="store_true")

    return parser


def _run_action(orch: MeetingOrchestrator, args: argparse.Namespace) -> BatchResult:
    if args.action == "create-multi-customer-meeting-invite":
        return orch.create_multi_customer_meeting_invite(
            parse_customer_codes_arg(args.customer_codes),
            args.topic_name,
            args.json_metadata,
            args.sender_email or "",
            dry_run=args.dry_run,
            force_update=args.force_update,
        )
    if args.action == "create-meeting-invite":
        return create_meeting_invite(
            orch,
            args.customer_code,
            args.topic_name,
            args.json_metadata,
            args.sender_email or "",
            dry_run=args.dry_run,
            force_update=args.force_update,
        )
    return orch.cancel_multi_customer_meeting(
        parse_customer_codes_arg(args.customer_codes),
        args.json_metadata,
        dry_run=args.dry_run,
    )


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def main(
    argv: Sequence[str] | None = None,
    *,
    orchestrator_factory: Callable[[], MeetingOrchestrator] = build_orchestrator,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    try:
        orch = orchestrator_factory()
        batch = _run_action(orch, args)
    except StoreWriteError as e:
        out = {"error": e.as_dict()}
        if e.batch is not None:
            out["result"] = e.batch.to_response()
        _print(out)
        return EXIT_STORE_CRITICAL
    except StoreError as e:
        _print({"error": e.as_dict()})
        return EXIT_STORE_CRITICAL
    except AppError as e:
        _print({"error": e.as_dict()})
        return EXIT_VALIDATION

    _print(batch.to_response())
    return EXIT_OK if batch.all_succeeded else EXIT_CUSTOMER_FAILURES


if __name__ == "__main__":
    sys.exit(main())
