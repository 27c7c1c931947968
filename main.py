#!/usr/bin/env python3
"""
SessionGuard -- operator CLI.

Usage:
  python main.py create-subject --email ops@example.com --role admin
  python main.py enrollment-token SUBJECT_ID
  python main.py set-role SUBJECT_ID staff
  python main.py reap
  python main.py scan SUBJECT_ID
  python main.py list-alerts [--subject SUBJECT_ID]

create-subject and enrollment-token print a short-lived bootstrap access
token. A subject with no passkey yet uses it as the Bearer token for
POST /api/v1/webauthn/register/start to enroll a first authenticator.

scan is meant to be run by an external scheduler (cron, systemd timer): it
detects anomalies for a subject and raises any recommended alerts that are
not already open.

Environment variables: see core/config.py (DATABASE_URL, SECRET_KEY, ...).
"""

import argparse
import sys

from sqlalchemy.exc import IntegrityError

from api.main import app, close_state, configure_state, reap
from core.errors import SessionGuardError

_BOOTSTRAP_TOKEN_SECONDS = 3600


def _print_token(state, subject_id: str) -> None:
    pair = state.identity_provider.issue_token_pair(subject_id, expire_seconds=_BOOTSTRAP_TOKEN_SECONDS)
    print(f"  Enrollment token (valid {_BOOTSTRAP_TOKEN_SECONDS // 60} min):")
    print(f"  {pair.access_token}")


def _create_subject(state, args) -> int:
    try:
        subject = state.identity_store.create_subject(args.email, role=args.role, display_name=args.display_name)
    except IntegrityError:
        print(f"  [!] A subject with email '{args.email}' already exists.")
        return 1
    print(f"  Created subject {subject.id} ({subject.email}, role={subject.role})")
    _print_token(state, subject.id)
    return 0


def _enrollment_token(state, args) -> int:
    _print_token(state, args.subject_id)
    return 0


def _set_role(state, args) -> int:
    if not state.identity_store.set_role(args.subject_id, args.role):
        print(f"  [!] Subject '{args.subject_id}' not found.")
        return 1
    print(f"  {args.subject_id} -> role={args.role}")
    return 0


def _reap(state, args) -> int:
    removed = reap(state)
    for name, count in removed.items():
        print(f"  {name:<12} {count} removed")
    return 0


def _scan(state, args) -> int:
    if state.identity_store.get_subject(args.subject_id) is None:
        print(f"  [!] Subject '{args.subject_id}' not found.")
        return 1
    result = state.security_monitor.scan(args.subject_id)
    report = result.report
    print(
        f"  sessions={report.simultaneous_sessions} devices={report.device_count} "
        f"addresses={len(report.network_addresses)} stale={len(report.stale_sessions)}"
    )
    for alert in result.raised:
        print(f"  RAISED   {alert.alert_type.value} ({alert.id})")
    for alert_type in result.skipped:
        print(f"  OPEN     {alert_type.value} (already unresolved)")
    if not result.raised and not result.skipped:
        print("  No anomalies.")
    return 0


def _list_alerts(state, args) -> int:
    alerts = state.alert_service.list_unresolved(args.subject)
    if not alerts:
        print("  No unresolved alerts.")
        return 0
    for alert in alerts:
        print(f"  {alert.created_at:%Y-%m-%d %H:%M}  {alert.alert_type.value:<20} {alert.subject_id}  {alert.id}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="SessionGuard operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-subject", help="Create a subject and print a bootstrap enrollment token")
    p.add_argument("--email", required=True)
    p.add_argument("--role", default="customer", help="Role name (default: customer)")
    p.add_argument("--display-name", default="")
    p.set_defaults(func=_create_subject)

    p = sub.add_parser("enrollment-token", help="Print a fresh bootstrap token for an existing subject")
    p.add_argument("subject_id")
    p.set_defaults(func=_enrollment_token)

    p = sub.add_parser("set-role", help="Change a subject's role")
    p.add_argument("subject_id")
    p.add_argument("role")
    p.set_defaults(func=_set_role)

    p = sub.add_parser("reap", help="Delete expired challenges, rate-limit windows, and revocations")
    p.set_defaults(func=_reap)

    p = sub.add_parser("scan", help="Detect anomalies for a subject and raise recommended alerts")
    p.add_argument("subject_id")
    p.set_defaults(func=_scan)

    p = sub.add_parser("list-alerts", help="List unresolved security alerts")
    p.add_argument("--subject", default=None, help="Only alerts for this subject id")
    p.set_defaults(func=_list_alerts)

    args = parser.parse_args()

    configure_state(app)
    try:
        code = args.func(app.state, args)
    except SessionGuardError as exc:
        print(f"  [!] {exc.message}")
        code = 1
    finally:
        close_state(app)
    sys.exit(code)


if __name__ == "__main__":
    main()
