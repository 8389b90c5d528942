#!/usr/bin/env python3
"""
Grant or revoke portal role claims (admin / teacher) on a Supabase user.

Claims are stored in the user's app_metadata, which only the service key
can change, and arrive in every access token the user gets afterwards.

Usage:
    python scripts/set_claim.py admin someone@campus.edu
    python scripts/set_claim.py teacher someone@campus.edu --revoke
"""
import argparse
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

CLAIMS = ('admin', 'teacher')


def find_user_id(supabase: Client, email: str) -> Optional[str]:
  page = 1
  while True:
    users = supabase.auth.admin.list_users(page=page, per_page=200)
    if not users:
      return None
    for user in users:
      if (user.email or '').lower() == email.lower():
        return user.id
    page += 1


def set_claim(supabase: Client, email: str, claim: str, enabled: bool = True) -> bool:
  user_id = find_user_id(supabase, email)
  if not user_id:
    print(f'No user with email {email}')
    return False

  user = supabase.auth.admin.get_user_by_id(user_id).user
  app_metadata = dict(user.app_metadata or {})
  app_metadata[claim] = enabled

  supabase.auth.admin.update_user_by_id(user_id, {'app_metadata': app_metadata})
  action = 'set' if enabled else 'revoked'
  print(f'{claim} claim {action} for {email} ({user_id})')
  return True


def main(argv=None) -> int:
  parser = argparse.ArgumentParser(description=__doc__.split('\n\n')[0])
  parser.add_argument('claim', choices=CLAIMS)
  parser.add_argument('email')
  parser.add_argument('--revoke', action='store_true', help='remove the claim instead of granting it')
  args = parser.parse_args(argv)

  load_dotenv()
  url = os.getenv('SUPABASE_URL')
  key = os.getenv('SUPABASE_SERVICE_KEY')
  if not url or not key:
    print('SUPABASE_URL and SUPABASE_SERVICE_KEY must be set (see .env)')
    return 1

  supabase = create_client(url, key)
  return 0 if set_claim(supabase, args.email, args.claim, enabled=not args.revoke) else 1


if __name__ == '__main__':
  sys.exit(main())
