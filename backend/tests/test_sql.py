"""
Checks on sql/announcements.sql: non-admins can only add their own read mark.
"""
import re
from pathlib import Path

import pytest

SQL_PATH = Path(__file__).resolve().parents[1] / 'sql' / 'announcements.sql'


@pytest.fixture(scope='module')
def sql():
  # drop comments and fold whitespace so statements compare on one line
  text = re.sub(r'--[^\n]*', '', SQL_PATH.read_text(encoding='utf-8'))
  return re.sub(r'\s+', ' ', text).lower()


@pytest.fixture(scope='module')
def mark_read_function(sql):
  match = re.search(r'create or replace function public\.mark_announcement_read\((.*?)\$\$;', sql)
  assert match, 'mark_announcement_read is not defined'
  return match.group(1)


def test_no_update_path_for_non_admins(sql):
  assert 'grant update (read_by)' not in sql
  policies = re.findall(r'create policy (\w+) on public\.announcements for (\w+) to authenticated', sql)
  writers = [name for name, command in policies if command in ('update', 'all')]
  assert writers == ['announcements_admin_write']
  assert 'drop policy if exists announcements_mark_own_read' in sql


def test_function_records_only_the_caller(mark_read_function):
  assert 'security definer' in mark_read_function
  assert 'set search_path = public' in mark_read_function
  assert 'reader := auth.uid()::text' in mark_read_function
  assert "auth.role(), '') = 'service_role'" in mark_read_function
  # appends one element, never assigns the whole array from the caller
  assert 'set read_by = array_append(a.read_by, reader)' in mark_read_function
  assert '(privileged or a.active)' in mark_read_function


def test_function_execute_grant(sql):
  assert 'revoke all on function public.mark_announcement_read(uuid, text) from public' in sql
  assert 'grant execute on function public.mark_announcement_read(uuid, text) to authenticated, service_role' in sql
