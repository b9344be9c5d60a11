from __future__ import annotations

import argparse

from backend.app.auth import KNOWN_ROLES, issue_token


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate JWT for Order Status Notifier API roles.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True)
    parser.add_argument(
        "--roles",
        required=True,
        help=f"Comma-separated roles out of: {', '.join(sorted(KNOWN_ROLES))}.",
    )
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - KNOWN_ROLES)
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")
    print(
        issue_token(
            secret=args.secret,
            subject=args.subject,
            roles=roles,
            hours=args.hours,
            algorithm=args.algorithm,
        )
    )


if __name__ == "__main__":
    main()
