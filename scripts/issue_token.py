"""Script to issue a bearer token for the TasteGraph API.

Usage:
    python scripts/issue_token.py <user_id> <email> [--expires-in SECONDS]

Admin routes accept the token only when the email is listed in ADMIN_EMAILS.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

# Add the parent directory to the path so we can import from tastegraph
sys.path.insert(0, str(Path(__file__).parent.parent))

from tastegraph.config.settings import settings
from tastegraph.utils.local_tokens import create_access_token


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a TasteGraph bearer token")
    parser.add_argument("user_id", help="Subject of the token, used as the rate-limit key")
    parser.add_argument("email", help="Email claim, checked against ADMIN_EMAILS for admin routes")
    parser.add_argument("--expires-in", type=int, default=None, help="Lifetime in seconds")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> str:
    """Main entry point."""
    args = parse_args(argv)
    token = create_access_token(args.user_id, args.email, expires_in=args.expires_in)
    is_admin = args.email.lower() in {e.lower() for e in settings.ADMIN_EMAILS}

    print("=" * 50)
    print(f"User ID: {args.user_id}")
    print(f"Email: {args.email}")
    print(f"Admin: {'yes' if is_admin else 'no (email not in ADMIN_EMAILS)'}")
    print("=" * 50)
    print(token)
    return token


if __name__ == "__main__":
    main()
