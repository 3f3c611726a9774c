#!/usr/bin/env python3
"""
inbox - multi-account Gmail assistant with reversible delete/archive

Every destructive command writes its audit entries before touching the
mailbox, so `inbox restore` / `inbox unarchive` can undo it later.
"""

import os
import sys
import json
import time
import asyncio
import logging
import argparse
from pathlib import Path
from typing import List, Dict, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from inboxd import config, service
from inboxd.audit import deletion_log, archive_log, SentLog, UsageLog
from inboxd.auth import AuthStore
from inboxd.client import GmailClient
from inboxd.engine import ActionEngine
from inboxd.errors import (
    InboxdError, AuthRevoked, ProviderError, UnsafeBatch, UserCancelled, UsageError,
    EXIT_OK, EXIT_USER_ERROR, EXIT_AUTH, EXIT_PARTIAL,
)
from inboxd.headers import extract_unsubscribe_info
from inboxd.messages import (
    create_message, extract_links, parse_ids_input, parse_since_duration,
    parse_older_than_duration, parse_message_date, group_by_sender, group_by_thread,
)
from inboxd.models import ActionResult, EmailMessage, FilterPreview, Operation
from inboxd.monitor import NotificationCheck
from inboxd.notifier import notify_new_emails
from inboxd.rules import RulesStore, apply_rules, build_rule_query, build_suggested_rules
from inboxd.skill import SkillInstaller
from inboxd.state import SeenState
from inboxd.stats import deletion_stats, analyze_patterns, usage_stats


load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'WARNING').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

CREDENTIALS_CONSOLE_URL = 'https://console.cloud.google.com/apis/credentials'

OPERATION_VERBS = {
    Operation.DELETE: ('moved to trash', 'inbox restore'),
    Operation.ARCHIVE: ('archived', 'inbox unarchive'),
    Operation.MARK_READ: ('marked as read', 'inbox mark-unread'),
    Operation.MARK_UNREAD: ('marked as unread', 'inbox mark-read'),
    Operation.RESTORE: ('restored', None),
    Operation.UNARCHIVE: ('moved back to the inbox', None),
}


class Context:
    """Stores and services shared by every command, rooted at one config directory"""

    def __init__(self, config_dir: Optional[Path] = None, service_factory=None, notify_fn=None):
        self.config_dir = Path(config_dir) if config_dir else config.config_dir()
        self.auth = AuthStore(self.config_dir)
        self.client = GmailClient(self.auth, service_factory=service_factory)
        self.deletion_log = deletion_log(self.config_dir)
        self.archive_log = archive_log(self.config_dir)
        self.engine = ActionEngine(self.client, self.deletion_log, self.archive_log)
        self.seen_state = SeenState(self.config_dir)
        self.rules = RulesStore(self.config_dir)
        self.sent_log = SentLog(self.config_dir)
        self.usage_log = UsageLog(self.config_dir)
        self.notify_fn = notify_fn or notify_new_emails


# === Helpers ===

def emit_json(data) -> None:
    """Machine-readable output; nothing else goes to stdout in --json mode"""
    sys.stdout.write(json.dumps(data, indent=2, ensure_ascii=False) + '\n')
    sys.stdout.flush()


def truncate(text: str, length: int) -> str:
    text = text or ''
    return text if len(text) <= length else text[:length - 3] + '...'


def confirm(prompt: str = 'Proceed? (y/N) ') -> None:
    """Raise UserCancelled unless the user answers y/yes"""
    try:
        answer = err_console.input(prompt)
    except EOFError:
        answer = ''
    if answer.strip().lower() not in ('y', 'yes'):
        raise UserCancelled()


def resolve_account(ctx: Context, specified: Optional[str]) -> str:
    """The single account a command acts on"""
    if specified and specified != 'all':
        return specified

    accounts = ctx.auth.list_accounts()
    if not accounts:
        return 'default'
    if len(accounts) == 1:
        return accounts[0].name

    available = ', '.join(f"{a.name} ({a.email or 'unknown'})" for a in accounts)
    raise UsageError(f"Multiple accounts configured. Please specify --account <name>. Available: {available}")


def resolve_accounts(ctx: Context, specified: Optional[str]) -> List[str]:
    """Every linked account for 'all' (or no flag), otherwise just the named one"""
    if specified and specified != 'all':
        return [specified]
    return [a.name for a in ctx.auth.list_accounts()] or ['default']


def results_exit_code(results: List[ActionResult]) -> int:
    failures = [r for r in results if not r.success]
    if any(r.error_kind == AuthRevoked.kind for r in failures):
        return EXIT_AUTH
    if failures:
        return EXIT_PARTIAL
    return EXIT_OK


def message_table(messages: List[EmailMessage], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Account", style="dim")
    table.add_column("From", style="white", max_width=40)
    table.add_column("Subject", style="green", max_width=50)
    table.add_column("ID", style="dim")
    for message in messages:
        table.add_row(
            message.account,
            escape(truncate(message.sender, 40)),
            escape(truncate(message.subject, 50)),
            message.id
        )
    return table


def print_results(results: List[ActionResult], op: Operation) -> None:
    succeeded = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    verb, undo = OPERATION_VERBS[op]

    for result in failed:
        console.print(f"[red]  - {result.id}: {result.error_kind} {escape(result.error or '')}[/red]")
    if succeeded:
        console.print(f"[green]{len(succeeded)} email(s) {verb}.[/green]")
        if undo:
            console.print(f"[dim]Tip: use '{undo} --last {len(succeeded)}' to undo.[/dim]")
    if failed:
        console.print(f"[red]Failed for {len(failed)} email(s).[/red]")
    if not results:
        console.print("[yellow]Nothing to do.[/yellow]")


def results_payload(results: List[ActionResult], op: Operation) -> Dict:
    return {
        'operation': op.value,
        'results': [r.to_dict() for r in results],
        'succeeded': sum(1 for r in results if r.success),
        'failed': sum(1 for r in results if not r.success),
    }


# === Setup & accounts ===

async def link_account(ctx: Context, name: Optional[str] = None):
    """Browser consent for a new account; unnamed accounts are keyed by their address"""
    account_name = name or f'temp_{int(time.time() * 1000)}'
    await asyncio.to_thread(ctx.auth.authorize, account_name)
    email = await ctx.client.profile_email(account_name)
    if not email:
        raise ProviderError('Could not retrieve email address from the authenticated account.')

    if not name:
        existing = next((a for a in ctx.auth.list_accounts() if a.email == email), None)
        if existing:
            ctx.auth.delete_tokens(account_name)
            return existing, False
        ctx.auth.rename_tokens(account_name, email)
        account_name = email

    return ctx.auth.add_account(account_name, email), True


async def cmd_setup(ctx: Context, args) -> int:
    console.print("[bold cyan]\nWelcome to inboxd! Let's get you set up.\n[/bold cyan]")

    if ctx.auth.is_configured():
        console.print("[yellow]You already have accounts configured:[/yellow]")
        for account in ctx.auth.list_accounts():
            console.print(f"  - {account.name} ({account.email})")
        confirm('Do you want to add another account? (y/N) ')
    elif not ctx.auth.has_credentials():
        console.print("[cyan]Step 1: Create Google Cloud credentials[/cyan]")
        console.print("  1. Create a project and enable the Gmail API")
        console.print("  2. Configure the OAuth consent screen and add yourself as a test user")
        console.print("  3. Create credentials -> OAuth client ID -> Desktop app")
        console.print(f"  4. Download the JSON file from {CREDENTIALS_CONSOLE_URL}\n")

        console.print("[cyan]Step 2: Provide your credentials file[/cyan]")
        while True:
            raw_path = console.input("  Path to credentials file: ").strip().strip('\'"')
            if not raw_path:
                console.print("[yellow]  Please provide a file path.[/yellow]")
                continue
            source = Path(raw_path).expanduser()
            valid, error = AuthStore.validate_credentials_file(source)
            if valid:
                break
            console.print(f"[red]  {escape(error)}[/red]")
            confirm('  Try again? (y/N) ')

        destination = ctx.auth.install_credentials(source)
        console.print(f"[green]  Credentials saved to {destination}[/green]\n")

    console.print("[cyan]Authenticate your Gmail account[/cyan]")
    name = console.input("  What should we call this account? (Leave empty to use email): ").strip()
    console.print("[dim]  A browser window will open for authorization...[/dim]")
    account, created = await link_account(ctx, name or None)
    if created:
        console.print(f"[green]  Authenticated as {account.email}[/green]\n")
    else:
        console.print(f"[yellow]  Account already registered as \"{account.name}\" ({account.email})[/yellow]\n")

    console.print("[bold green]You're all set![/bold green] Try: inbox summary, inbox check, inbox install-service")
    return EXIT_OK


async def cmd_auth(ctx: Context, args) -> int:
    console.print("[cyan]Authenticating...[/cyan] A browser window will open for you to authorize access.")
    account, created = await link_account(ctx, args.account)
    if not created:
        console.print(f"[yellow]Account already registered as \"{account.name}\" ({account.email})[/yellow]")
        return EXIT_OK
    console.print(f"[green]Authentication successful![/green] Account \"{account.name}\" linked to {account.email}")
    return EXIT_OK


def cmd_accounts(ctx: Context, args) -> int:
    accounts = ctx.auth.list_accounts()
    if args.json:
        emit_json({'accounts': [a.to_dict() for a in accounts], 'defaultAccount': ctx.auth.default_account()})
        return EXIT_OK

    if not accounts:
        console.print("[dim]No accounts configured. Run: inbox setup[/dim]")
        return EXIT_OK

    table = Table(title="Configured Accounts", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Email", style="green")
    for account in accounts:
        table.add_row(account.name, account.email or 'unknown email')
    console.print(table)
    console.print("[dim]To add another account: inbox auth -a <name>[/dim]")
    return EXIT_OK


def cmd_logout(ctx: Context, args) -> int:
    if args.all or args.account == 'all':
        count = ctx.auth.remove_all_accounts()
        if count == 0:
            console.print("[dim]No accounts to remove.[/dim]")
        else:
            console.print(f"[green]Removed {count} account(s) and cleared all tokens.[/green]")
        return EXIT_OK

    if not args.account:
        raise UsageError('Usage: inbox logout --account <name> or inbox logout --all')

    if not ctx.auth.remove_account(args.account):
        console.print(f"[yellow]Account \"{args.account}\" not found.[/yellow]")
        return EXIT_OK
    console.print(f"[green]Removed account \"{args.account}\"[/green]")
    return EXIT_OK


# === Reading ===

async def cmd_summary(ctx: Context, args) -> int:
    accounts = resolve_accounts(ctx, args.account)
    emails = {a.name: a.email for a in ctx.auth.list_accounts()}

    summary = {'accounts': [], 'totalUnread': 0}
    previews = {}
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
        disable=args.json,
    ) as progress:
        task = progress.add_task("Checking inboxes...", total=None)
        for account in accounts:
            progress.update(task, description=f"Checking {account}...")
            count = await ctx.client.unread_count(account)
            summary['accounts'].append({'name': account, 'email': emails.get(account, account), 'unreadCount': count})
            summary['totalUnread'] += count
            if not args.json:
                ids = await ctx.client.list_unread(account, max_results=args.count)
                previews[account] = await ctx.client.get_messages(account, ids)

    if args.json:
        emit_json(summary)
        return EXIT_OK

    for entry in summary['accounts']:
        account = entry['name']
        last_check = ctx.seen_state.last_check(account)
        last_check_text = time.strftime('%Y-%m-%d %H:%M', time.localtime(last_check / 1000)) if last_check else 'Never'
        console.print(f"\n[bold cyan]{escape(entry['email'])}[/bold cyan] - {entry['unreadCount']} unread "
                      f"[dim](last check: {last_check_text})[/dim]")
        if previews[account]:
            console.print(message_table(previews[account], title=f"Latest unread for {account}"))
        else:
            console.print("[dim]No unread emails[/dim]")
    return EXIT_OK


async def cmd_check(ctx: Context, args) -> int:
    accounts = resolve_accounts(ctx, args.account)
    check = NotificationCheck(ctx.client, ctx.seen_state, ctx.rules, ctx.engine, notify_fn=ctx.notify_fn)
    results = await check.run(accounts)

    if args.json:
        emit_json({'accounts': [r.to_dict() for r in results]})
        return EXIT_OK
    if args.quiet:
        return EXIT_OK

    total_new = 0
    for result in results:
        if result.error:
            console.print(f"[red][{result.account}] {escape(result.error)}[/red]")
            continue
        total_new += len(result.new_messages)
        if result.new_messages:
            console.print(f"[green][{result.account}] {len(result.new_messages)} new email(s)[/green]")
            for message in result.new_messages:
                console.print(f"  - {escape(message.subject)}")
                console.print(f"[dim]    From: {escape(message.sender)}[/dim]")
        for applied in result.auto_applied:
            state = 'ok' if applied.success else applied.error_kind
            console.print(f"[dim]    rule applied to {applied.id}: {state}[/dim]")
        if result.suppressed:
            console.print(f"[yellow][{result.account}] notification postponed (rate limited)[/yellow]")

    if total_new == 0:
        console.print("[dim]No new emails since last check.[/dim]")
    return EXIT_OK


async def cmd_analyze(ctx: Context, args) -> int:
    accounts = resolve_accounts(ctx, args.account)

    older_than_query = None
    if args.older_than:
        days = parse_older_than_duration(args.older_than)
        if not days:
            raise UsageError(f'Invalid --older-than format: "{args.older_than}". Use format like "30d", "2w", "1m"')
        older_than_query = f'older_than:{days}'

    since = None
    if args.since:
        since = parse_since_duration(args.since)
        if since is None:
            raise UsageError(f'Invalid --since format: "{args.since}". Use format like "7d", "24h", "30m"')

    emails: List[EmailMessage] = []
    for account in accounts:
        if older_than_query:
            query = older_than_query if args.all else f'is:unread {older_than_query}'
            emails.extend(await ctx.client.search(account, query, args.count))
        else:
            ids = await ctx.client.list_unread(account, max_results=args.count, include_read=args.all)
            emails.extend(await ctx.client.get_messages(account, ids))

    if since is not None:
        # Undated mail is kept rather than guessed at
        dated = [(e, parse_message_date(e.date)) for e in emails]
        emails = [e for e, moment in dated if moment is None or moment >= since]

    if args.group_by == 'sender':
        emit_json(group_by_sender(emails))
    elif args.group_by == 'thread':
        emit_json(group_by_thread(emails))
    else:
        emit_json([e.to_dict() for e in emails])
    return EXIT_OK


async def cmd_read(ctx: Context, args) -> int:
    message_id = (args.id or '').strip()
    if not message_id:
        raise UsageError('No message ID provided.')

    account = resolve_account(ctx, args.account)
    content = await ctx.client.get_content(account, message_id, prefer_html=args.links)
    links = extract_links(content.body, content.mime_type) if args.links else None

    if args.json:
        data = content.to_dict()
        if links is not None:
            data = {'id': content.id, 'subject': content.subject, 'from': content.sender, 'links': links}
        emit_json(data)
        return EXIT_OK

    console.print(f"[bold]From:[/bold] {escape(content.sender)}")
    console.print(f"[bold]To:[/bold] {escape(content.to)}")
    console.print(f"[bold]Date:[/bold] {escape(content.date)}")
    console.print(f"[bold]Subject:[/bold] {escape(content.subject)}\n")

    if links is not None:
        if not links:
            console.print("[dim]No links found.[/dim]")
        for link in links:
            label = f"{escape(link['text'])}: " if link.get('text') else ''
            console.print(f"  - {label}[cyan]{escape(link['url'])}[/cyan]")
        return EXIT_OK

    console.print(escape(content.body))
    return EXIT_OK


async def cmd_search(ctx: Context, args) -> int:
    account = resolve_account(ctx, args.account)
    messages = await ctx.client.search(account, args.query, args.count)

    if args.json:
        emit_json([m.to_dict() for m in messages])
        return EXIT_OK

    if not messages:
        console.print("[dim]No emails found.[/dim]")
        return EXIT_OK
    console.print(message_table(messages, title=f"Search: {escape(args.query)}"))
    return EXIT_OK


# === Sending ===

async def cmd_send(ctx: Context, args) -> int:
    account = resolve_account(ctx, args.account)

    console.print(f"[bold]Account:[/bold] {escape(account)}")
    console.print(f"[bold]To:[/bold] {escape(args.to)}")
    console.print(f"[bold]Subject:[/bold] {escape(args.subject)}\n")
    console.print(escape(args.body))

    if args.dry_run:
        console.print("\n[yellow]Dry run: email was not sent.[/yellow]")
        return EXIT_OK
    if not args.confirm:
        confirm()

    message = create_message(args.to, args.subject, args.body)
    sent = await ctx.client.send(account, message)
    ctx.sent_log.log_sent(account, args.to, args.subject, args.body, sent.get('id'), sent.get('threadId'))
    console.print(f"[green]Email sent[/green] (id {sent.get('id')})")
    return EXIT_OK


async def cmd_reply(ctx: Context, args) -> int:
    account = resolve_account(ctx, args.account)
    original = await ctx.client.get_message(account, args.id)

    console.print(f"[bold]Replying to:[/bold] {escape(original.sender)}")
    console.print(f"[bold]Subject:[/bold] {escape(original.subject)}\n")
    console.print(escape(args.body))

    if args.dry_run:
        console.print("\n[yellow]Dry run: reply was not sent.[/yellow]")
        return EXIT_OK
    if not args.confirm:
        confirm()

    sent = await ctx.client.reply(account, args.id, args.body)
    ctx.sent_log.log_sent(account, sent['to'], sent['subject'], args.body, sent.get('id'), sent.get('threadId'),
                          reply_to_id=args.id)
    console.print(f"[green]Reply sent[/green] (id {sent.get('id')})")
    return EXIT_OK


# === Destructive & reverse ===

async def run_forward(ctx: Context, args, op: Operation) -> int:
    """delete / archive / mark-read / mark-unread by --ids or by --sender/--match"""
    ids = parse_ids_input(args.ids)
    if args.ids is not None and not ids:
        raise UsageError('No message IDs provided.')

    def review(preview: FilterPreview) -> None:
        if not args.json:
            console.print(message_table(preview.messages, title=f"Emails to {op.value}"))
        if not args.confirm:
            confirm(f"This will {op.value} {len(preview.messages)} email(s). Proceed? (y/N) ")

    if ids:
        account = resolve_account(ctx, args.account)
        if args.dry_run:
            messages, failures = await ctx.engine.select(account, ids, args.sender, args.match)
            return print_dry_run(args, op, FilterPreview(messages=messages), failures)

        results = await ctx.engine.forward(account, op, ids, sender=args.sender, match=args.match, confirm_fn=review)
        return report_results(args, results, op)

    preview, results = await ctx.engine.forward_by_filter(
        resolve_accounts(ctx, args.account), op, args.sender, args.match, args.limit,
        dry_run=args.dry_run, force=args.force, confirm_fn=review,
    )
    if args.dry_run:
        return print_dry_run(args, op, preview, [])
    if not preview.messages:
        if not args.json:
            console.print("[yellow]No emails found matching the selection.[/yellow]")
        return EXIT_OK
    return report_results(args, results, op)


def print_dry_run(args, op: Operation, preview: FilterPreview, failures: List[ActionResult]) -> int:
    if args.json:
        emit_json({
            'dryRun': True,
            'operation': op.value,
            'count': len(preview.messages),
            'emails': [m.to_dict() for m in preview.messages],
            'ids': preview.ids,
            'warnings': preview.warnings,
            'failed': [f.to_dict() for f in failures],
        })
        return EXIT_OK
    if preview.messages:
        console.print(message_table(preview.messages, title=f"Emails to {op.value}"))
    for warning in preview.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")
    console.print(f"\n[yellow]Dry run: {len(preview.messages)} email(s) would be affected.[/yellow]")
    console.print(f"[dim]IDs: {','.join(preview.ids)}[/dim]")
    return EXIT_OK


async def run_reverse(ctx: Context, args, op: Operation) -> int:
    """restore / unarchive from the matching audit log"""
    ids = parse_ids_input(args.ids)
    if args.ids is not None and not ids:
        raise UsageError('No message IDs provided.')
    if not ids and not args.last:
        raise UsageError(f'Specify --ids or --last N. See: inbox {op.value} --help')

    account = args.account if args.account and args.account != 'all' else None
    results = await ctx.engine.reverse(op, ids=ids or None, last=args.last, account=account)
    return report_results(args, results, op)


def report_results(args, results: List[ActionResult], op: Operation) -> int:
    if args.json:
        emit_json(results_payload(results, op))
    else:
        print_results(results, op)
    return results_exit_code(results)


async def cmd_delete(ctx: Context, args) -> int:
    return await run_forward(ctx, args, Operation.DELETE)


async def cmd_archive(ctx: Context, args) -> int:
    return await run_forward(ctx, args, Operation.ARCHIVE)


async def cmd_mark_read(ctx: Context, args) -> int:
    return await run_forward(ctx, args, Operation.MARK_READ)


async def cmd_mark_unread(ctx: Context, args) -> int:
    return await run_forward(ctx, args, Operation.MARK_UNREAD)


async def cmd_restore(ctx: Context, args) -> int:
    return await run_reverse(ctx, args, Operation.RESTORE)


async def cmd_unarchive(ctx: Context, args) -> int:
    return await run_reverse(ctx, args, Operation.UNARCHIVE)


# === Logs & stats ===

def cmd_deletion_log(ctx: Context, args) -> int:
    entries = ctx.deletion_log.list(since_days=args.days)
    if args.json:
        emit_json(entries)
        return EXIT_OK

    if not entries:
        console.print(f"[dim]No deletions in the last {args.days} days.[/dim]")
        return EXIT_OK

    table = Table(title=f"Deleted in the last {args.days} days", show_header=True, header_style="bold cyan")
    table.add_column("Deleted", style="dim")
    table.add_column("Account", style="dim")
    table.add_column("From", style="white", max_width=40)
    table.add_column("Subject", style="green", max_width=50)
    table.add_column("ID", style="dim")
    for entry in sorted(entries, key=ctx.deletion_log.timestamp_of, reverse=True):
        table.add_row(
            entry.get('deletedAt', ''),
            entry.get('account') or 'default',
            escape(truncate(entry.get('from', ''), 40)),
            escape(truncate(entry.get('subject', ''), 50)),
            entry.get('id', '')
        )
    console.print(table)
    console.print(f"[dim]Log file: {ctx.deletion_log.path}[/dim]")
    return EXIT_OK


def cmd_stats(ctx: Context, args) -> int:
    deletions = deletion_stats(ctx.deletion_log.list(since_days=args.days))
    usage = usage_stats(ctx.usage_log.entries(), days=args.days)

    if args.json:
        emit_json({'period': args.days, 'deletions': deletions, 'usage': usage})
        return EXIT_OK

    console.print(f"\n[bold green]Deletions in the last {args.days} days: {deletions['total']:,}[/bold green]")
    table = Table(title="Top senders deleted", show_header=True, header_style="bold cyan")
    table.add_column("Domain", style="cyan", width=35)
    table.add_column("Count", justify="right", style="green", width=10)
    for sender in deletions['topSenders']:
        table.add_row(sender['domain'], f"{sender['count']:,}")
    console.print(table)

    for account, count in deletions['byAccount'].items():
        console.print(f"  - {account}: {count:,}")

    console.print(f"\n[bold cyan]Commands run:[/bold cyan] {usage['total']:,} "
                  f"({usage['success']:,} ok, {usage['failure']:,} failed)")
    for cmd, count in list(usage['byCommand'].items())[:10]:
        console.print(f"  - {cmd}: {count:,}")
    return EXIT_OK


def cmd_cleanup_suggest(ctx: Context, args) -> int:
    analysis = analyze_patterns(ctx.deletion_log.list(since_days=args.days), period=args.days)
    suggestions = build_suggested_rules(analysis)

    if args.json:
        emit_json({**analysis, 'suggestedRules': suggestions['suggestions']})
        return EXIT_OK

    if not suggestions['suggestions']:
        console.print(f"[dim]No patterns found in {analysis['totalDeleted']} deletions "
                      f"over the last {args.days} days.[/dim]")
        return EXIT_OK

    table = Table(title="Suggested rules", show_header=True, header_style="bold cyan")
    table.add_column("Action", style="cyan")
    table.add_column("Sender", style="white")
    table.add_column("Why", style="dim")
    for suggestion in suggestions['suggestions']:
        table.add_row(suggestion['action'], suggestion['sender'], suggestion['reason'])
    console.print(table)
    console.print("[dim]Add one with: inbox rules add --action <action> --sender <sender>[/dim]")
    return EXIT_OK


def cmd_usage(ctx: Context, args) -> int:
    if args.clear:
        removed = ctx.usage_log.clear()
        console.print("[green]Usage log cleared.[/green]" if removed else "[dim]Usage log is already empty.[/dim]")
        return EXIT_OK

    usage = usage_stats(ctx.usage_log.entries(), days=args.days)
    if args.json:
        emit_json(usage)
        return EXIT_OK

    if not ctx.usage_log.enabled:
        console.print(f"[dim]Usage logging is disabled ({config.ENV_NO_ANALYTICS}).[/dim]")

    table = Table(title=f"Usage in the last {args.days} days", show_header=True, header_style="bold cyan")
    table.add_column("Command", style="cyan", width=25)
    table.add_column("Count", justify="right", style="green", width=10)
    for cmd, count in usage['byCommand'].items():
        table.add_row(cmd, f"{count:,}")
    console.print(table)
    return EXIT_OK


# === Rules ===

def rule_row(rule) -> List[str]:
    return [rule.id, rule.action.value, rule.sender or '', rule.subject_pattern or '', build_rule_query(rule)]


async def cmd_rules(ctx: Context, args) -> int:
    action = args.rules_command or 'list'
    as_json = getattr(args, 'json', False)

    if action == 'list':
        rules = ctx.rules.list_rules()
        if as_json:
            emit_json({'rules': [r.to_dict() for r in rules]})
            return EXIT_OK
        if not rules:
            console.print("[dim]No rules. Add one with: inbox rules add --action always-delete --sender <pattern>[/dim]")
            return EXIT_OK
        table = Table(title="Rules", show_header=True, header_style="bold cyan")
        for column in ("ID", "Action", "Sender", "Subject", "Query"):
            table.add_column(column)
        for rule in rules:
            table.add_row(*[escape(value) for value in rule_row(rule)])
        console.print(table)
        return EXIT_OK

    if action == 'add':
        older_than_days = None
        if args.older_than:
            days = parse_older_than_duration(args.older_than)
            if not days:
                raise UsageError(f'Invalid --older-than format: "{args.older_than}". Use format like "30d", "2w", "1m"')
            older_than_days = int(days[:-1])

        rule, created = ctx.rules.add_rule(args.action, sender=args.sender, subject_pattern=args.subject,
                                           older_than_days=older_than_days)
        if as_json:
            emit_json({'rule': rule.to_dict(), 'created': created})
        elif created:
            console.print(f"[green]Added rule {rule.id}[/green] ({rule.action.value} {escape(build_rule_query(rule))})")
        else:
            console.print(f"[yellow]Rule already exists: {rule.id}[/yellow]")
        return EXIT_OK

    if action == 'remove':
        removed = ctx.rules.remove_rule(args.id)
        if removed is None:
            raise UsageError(f'No rule with id {args.id}')
        if as_json:
            emit_json({'removed': removed.to_dict()})
        else:
            console.print(f"[green]Removed rule {removed.id}[/green]")
        return EXIT_OK

    accounts = resolve_accounts(ctx, args.account)
    if not args.dry_run and not args.confirm:
        preview = await apply_rules(ctx.rules, ctx.client, ctx.engine, accounts, dry_run=True, limit=args.limit)
        print_plan(preview['plan'])
        confirm()

    outcome = await apply_rules(ctx.rules, ctx.client, ctx.engine, accounts, dry_run=args.dry_run, limit=args.limit)
    plan = outcome['plan']
    if as_json:
        emit_json({
            'dryRun': outcome['dryRun'],
            'ruleSummaries': plan['ruleSummaries'],
            'delete': [m.to_dict() for m in plan['deleteCandidates']],
            'archive': [m.to_dict() for m in plan['archiveCandidates']],
            'markRead': [m.to_dict() for m in plan['markReadCandidates']],
            'results': [r.to_dict() for r in outcome['results']],
        })
        return results_exit_code(outcome['results'])

    if args.dry_run:
        print_plan(plan)
        console.print("[yellow]Dry run: no changes made.[/yellow]")
        return EXIT_OK

    results = outcome['results']
    console.print(f"[green]Applied rules: {sum(1 for r in results if r.success)} succeeded, "
                  f"{sum(1 for r in results if not r.success)} failed.[/green]")
    return results_exit_code(results)


def print_plan(plan: Dict) -> None:
    table = Table(title="Rule matches", show_header=True, header_style="bold cyan")
    table.add_column("Rule", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Sender", style="white")
    table.add_column("Subject", style="white")
    table.add_column("Matches", justify="right", style="green")
    table.add_column("Applied", justify="right", style="green")
    for summary in plan['ruleSummaries']:
        table.add_row(
            summary['id'],
            summary['action'],
            escape(summary['sender'] or ''),
            escape(summary['subjectPattern'] or ''),
            str(summary['matches']),
            str(summary['applied'])
        )
    console.print(table)
    console.print(f"  delete: {len(plan['deleteCandidates'])}  archive: {len(plan['archiveCandidates'])}  "
                  f"mark read: {len(plan['markReadCandidates'])}  protected: {len(plan['protectedKeys'])}")


# === Unsubscribe, service, skill ===

async def cmd_unsubscribe(ctx: Context, args) -> int:
    account = resolve_account(ctx, args.account)
    content = await ctx.client.get_content(account, args.id, prefer_html=True)
    info = extract_unsubscribe_info(content.headers, content.body, content.mime_type)

    if args.json:
        emit_json({'id': content.id, 'from': content.sender, 'subject': content.subject, **info})
        return EXIT_OK

    console.print(f"[bold]{escape(content.sender)}[/bold] - {escape(content.subject)}")
    if not (info['unsubscribeLinks'] or info['unsubscribeEmails'] or info['preferenceLinks']):
        console.print("[yellow]No unsubscribe options found.[/yellow]")
        return EXIT_OK
    for url in info['unsubscribeLinks']:
        console.print(f"  unsubscribe: [cyan]{escape(url)}[/cyan]")
    for address in info['unsubscribeEmails']:
        console.print(f"  email: [cyan]{escape(address)}[/cyan]")
    for url in info['preferenceLinks']:
        console.print(f"  preferences: [cyan]{escape(url)}[/cyan]")
    if info['oneClick']:
        console.print("[dim]Sender supports one-click unsubscribe.[/dim]")
    return EXIT_OK


def cmd_install_service(ctx: Context, args) -> int:
    if args.uninstall:
        ok, message = service.uninstall()
    else:
        ok, message = service.install(interval=args.interval)

    if not ok:
        err_console.print(f"[red]{escape(message)}[/red]")
        return EXIT_USER_ERROR
    console.print(f"[green]{escape(message)}[/green]")
    return EXIT_OK


def cmd_install_skill(ctx: Context, args) -> int:
    installer = SkillInstaller()
    if args.uninstall:
        if installer.uninstall():
            console.print(f"[green]Removed skill from {installer.destination}[/green]")
        else:
            console.print("[dim]Skill is not installed.[/dim]")
        return EXIT_OK

    result = installer.install(force=args.force)
    action = result['action']
    if action == 'skipped':
        err_console.print(f"[yellow]{installer.destination} holds a skill from another source. "
                          f"Use --force to replace it.[/yellow]")
        return EXIT_USER_ERROR
    if action == 'unchanged':
        console.print(f"[dim]Skill is already up to date at {result['path']}[/dim]")
    else:
        console.print(f"[green]Skill {action} at {result['path']}[/green]")
        if result.get('backupPath'):
            console.print(f"[dim]Previous version saved to {result['backupPath']}[/dim]")
    return EXIT_OK


# === Argument parsing ===

def _add_account(parser, default=None, help_text='Account name'):
    parser.add_argument('-a', '--account', default=default, help=help_text)


def _add_forward_options(parser, noun: str):
    parser.add_argument('--ids', help='Message IDs (comma separated, or a JSON array)')
    parser.add_argument('--sender', help='Filter by sender (case-insensitive substring)')
    parser.add_argument('--match', help='Filter by subject (case-insensitive substring)')
    parser.add_argument('--limit', type=int, default=config.FILTER_DEFAULT_LIMIT,
                        help=f'Max emails when using filters (default: {config.FILTER_DEFAULT_LIMIT})')
    parser.add_argument('--dry-run', action='store_true', help=f'Show what would be {noun} without changing anything')
    parser.add_argument('--confirm', action='store_true', help='Skip the confirmation prompt')
    parser.add_argument('--force', action='store_true', help='Override safety warnings (short patterns, large batches)')
    parser.add_argument('--json', action='store_true', help='Output as JSON')
    _add_account(parser, default='all', help_text='Account name (or "all" for filter-based selection)')


def _add_reverse_options(parser):
    parser.add_argument('--ids', help='Message IDs to undo (comma separated, or a JSON array)')
    parser.add_argument('--last', type=int, help='Undo the N most recent entries')
    parser.add_argument('--json', action='store_true', help='Output as JSON')
    _add_account(parser, help_text='Only undo entries for this account')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='inbox', description='Gmail monitoring CLI with multi-account support')
    subparsers = parser.add_subparsers(dest='command', metavar='<command>')

    subparsers.add_parser('setup', help='Interactive setup wizard for first-time configuration')

    auth = subparsers.add_parser('auth', help='Authenticate a Gmail account')
    _add_account(auth, help_text='Account name (e.g. personal, work); defaults to the email address')

    accounts = subparsers.add_parser('accounts', help='List configured accounts')
    accounts.add_argument('--json', action='store_true', help='Output as JSON')

    logout = subparsers.add_parser('logout', help='Remove an account or all accounts')
    _add_account(logout, help_text='Account to remove (or "all")')
    logout.add_argument('--all', action='store_true', help='Remove all accounts')

    summary = subparsers.add_parser('summary', help='Show unread counts per account')
    _add_account(summary, default='all', help_text='Specific account (or "all")')
    summary.add_argument('-n', '--count', type=int, default=5, help='Emails to show per account')
    summary.add_argument('--json', action='store_true', help='Output as JSON')

    check = subparsers.add_parser('check', help='Check for new emails, apply rules and notify')
    _add_account(check, default='all', help_text='Specific account (or "all")')
    check.add_argument('-q', '--quiet', action='store_true', help='Suppress output, only send notifications')
    check.add_argument('--json', action='store_true', help='Output as JSON')

    analyze = subparsers.add_parser('analyze', help='JSON inventory of emails for analysis (unread only by default)')
    _add_account(analyze, default='all', help_text='Account to analyze (or "all")')
    analyze.add_argument('-n', '--count', type=int, default=20, help='Emails per account')
    analyze.add_argument('--all', action='store_true', help='Include read emails')
    analyze.add_argument('--since', help='Only emails from the last N days/hours/minutes (e.g. 7d, 24h)')
    analyze.add_argument('--older-than', help='Only emails older than N days/weeks/months (e.g. 30d, 2w, 1m)')
    analyze.add_argument('--group-by', choices=['sender', 'thread'], help='Group emails by sender domain or thread')
    analyze.add_argument('--json', action='store_true', help='Accepted for symmetry; output is always JSON')

    read = subparsers.add_parser('read', help='Read the full content of an email')
    read.add_argument('--id', required=True, help='Message ID')
    read.add_argument('--links', action='store_true', help='Extract links from the email')
    read.add_argument('--json', action='store_true', help='Output as JSON')
    _add_account(read)

    search = subparsers.add_parser('search', help='Search with a Gmail query')
    search.add_argument('-q', '--query', required=True, help='Gmail search query, e.g. "from:boss is:unread"')
    search.add_argument('-n', '--count', type=int, default=20, help='Max results')
    search.add_argument('--json', action='store_true', help='Output as JSON')
    _add_account(search)

    send = subparsers.add_parser('send', help='Send an email')
    send.add_argument('-t', '--to', required=True, help='Recipient')
    send.add_argument('-s', '--subject', required=True, help='Subject')
    send.add_argument('-b', '--body', required=True, help='Plain-text body')
    send.add_argument('--dry-run', action='store_true', help='Preview without sending')
    send.add_argument('--confirm', action='store_true', help='Skip the confirmation prompt')
    _add_account(send)

    reply = subparsers.add_parser('reply', help='Reply to an email in its thread')
    reply.add_argument('--id', required=True, help='Message ID to reply to')
    reply.add_argument('-b', '--body', required=True, help='Plain-text body')
    reply.add_argument('--dry-run', action='store_true', help='Preview without sending')
    reply.add_argument('--confirm', action='store_true', help='Skip the confirmation prompt')
    _add_account(reply)

    _add_forward_options(subparsers.add_parser('delete', help='Move emails to trash (logged, undo with restore)'),
                         'deleted')
    _add_reverse_options(subparsers.add_parser('restore', help='Restore deleted emails from the deletion log'))
    _add_forward_options(subparsers.add_parser('archive', help='Remove emails from the inbox (logged)'), 'archived')
    _add_reverse_options(subparsers.add_parser('unarchive', help='Move archived emails back to the inbox'))
    _add_forward_options(subparsers.add_parser('mark-read', help='Mark emails as read'), 'marked read')
    _add_forward_options(subparsers.add_parser('mark-unread', help='Mark emails as unread'), 'marked unread')

    deletion_log_parser = subparsers.add_parser('deletion-log', help='Show recently deleted emails')
    deletion_log_parser.add_argument('--days', type=int, default=config.STATS_WINDOW_DAYS, help='Window in days')
    deletion_log_parser.add_argument('--json', action='store_true', help='Output as JSON')

    stats = subparsers.add_parser('stats', help='Deletion and usage statistics')
    stats.add_argument('--days', type=int, default=config.STATS_WINDOW_DAYS, help='Window in days')
    stats.add_argument('--json', action='store_true', help='Output as JSON')

    suggest = subparsers.add_parser('cleanup-suggest', help='Suggest rules from deletion patterns')
    suggest.add_argument('--days', type=int, default=config.STATS_WINDOW_DAYS, help='Window in days')
    suggest.add_argument('--json', action='store_true', help='Output as JSON')

    rules = subparsers.add_parser('rules', help='Manage automatic rules')
    rules_sub = rules.add_subparsers(dest='rules_command', metavar='<action>')
    rules_list = rules_sub.add_parser('list', help='List rules')
    rules_add = rules_sub.add_parser('add', help='Add a rule')
    rules_add.add_argument('--action', required=True, help='always-delete, never-delete, auto-archive or auto-mark-read')
    rules_add.add_argument('--sender', help='Sender pattern (case-insensitive substring)')
    rules_add.add_argument('--subject', help='Subject pattern (case-insensitive substring)')
    rules_add.add_argument('--older-than', help='Only match mail older than this, e.g. "30d", "2w", "1m"')
    rules_remove = rules_sub.add_parser('remove', help='Remove a rule')
    rules_remove.add_argument('--id', required=True, help='Rule ID')
    rules_apply = rules_sub.add_parser('apply', help='Apply rules to the inbox now')
    rules_apply.add_argument('--dry-run', action='store_true', help='Show the plan without changing anything')
    rules_apply.add_argument('--confirm', action='store_true', help='Skip the confirmation prompt')
    rules_apply.add_argument('--limit', type=int, default=config.FILTER_DEFAULT_LIMIT, help='Max matches per rule')
    _add_account(rules_apply, default='all', help_text='Account (or "all")')
    for rules_parser in (rules_list, rules_add, rules_remove, rules_apply):
        rules_parser.add_argument('--json', action='store_true', help='Output as JSON')

    usage = subparsers.add_parser('usage', help='Show or clear the local usage log')
    usage.add_argument('--clear', action='store_true', help='Delete the usage log')
    usage.add_argument('--days', type=int, default=config.STATS_WINDOW_DAYS, help='Window in days')
    usage.add_argument('--json', action='store_true', help='Output as JSON')

    unsubscribe = subparsers.add_parser('unsubscribe', help='Show the unsubscribe options of an email')
    unsubscribe.add_argument('--id', required=True, help='Message ID')
    unsubscribe.add_argument('--json', action='store_true', help='Output as JSON')
    _add_account(unsubscribe)

    install_service = subparsers.add_parser('install-service', help='Run `inbox check` periodically in the background')
    install_service.add_argument('--interval', type=int, default=service.DEFAULT_INTERVAL_MINUTES,
                                 help='Minutes between checks')
    install_service.add_argument('--uninstall', action='store_true', help='Remove the background service')

    install_skill = subparsers.add_parser('install-skill', help='Install the inbox assistant skill')
    install_skill.add_argument('--uninstall', action='store_true', help='Remove the skill')
    install_skill.add_argument('--force', action='store_true', help='Replace a skill from another source')

    return parser


COMMANDS = {
    'setup': cmd_setup,
    'auth': cmd_auth,
    'accounts': cmd_accounts,
    'logout': cmd_logout,
    'summary': cmd_summary,
    'check': cmd_check,
    'analyze': cmd_analyze,
    'read': cmd_read,
    'search': cmd_search,
    'send': cmd_send,
    'reply': cmd_reply,
    'delete': cmd_delete,
    'restore': cmd_restore,
    'archive': cmd_archive,
    'unarchive': cmd_unarchive,
    'mark-read': cmd_mark_read,
    'mark-unread': cmd_mark_unread,
    'deletion-log': cmd_deletion_log,
    'stats': cmd_stats,
    'cleanup-suggest': cmd_cleanup_suggest,
    'rules': cmd_rules,
    'usage': cmd_usage,
    'unsubscribe': cmd_unsubscribe,
    'install-service': cmd_install_service,
    'install-skill': cmd_install_skill,
}


def used_flags(argv: List[str]) -> List[str]:
    return sorted({arg.split('=', 1)[0] for arg in argv if arg.startswith('-')})


def main(argv: Optional[List[str]] = None, context: Optional[Context] = None) -> int:
    """Main entry point, returns the process exit code"""
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as error:
        return EXIT_OK if error.code == 0 else EXIT_USER_ERROR

    if not args.command:
        parser.print_help()
        return EXIT_USER_ERROR

    ctx = context or Context()
    handler = COMMANDS[args.command]

    try:
        outcome = handler(ctx, args)
        code = asyncio.run(outcome) if asyncio.iscoroutine(outcome) else outcome
    except UnsafeBatch as error:
        err_console.print("[yellow]Safety warnings:[/yellow]")
        for warning in error.warnings:
            err_console.print(f"[yellow]  - {escape(warning)}[/yellow]")
        err_console.print("[red]Use --force to proceed anyway, or narrow your filters.[/red]")
        code = error.exit_code
    except UserCancelled as error:
        err_console.print(f"[dim]{escape(str(error))}[/dim]")
        code = error.exit_code
    except InboxdError as error:
        logger.debug(f"{args.command} failed", exc_info=True)
        err_console.print(f"[red]Error ({error.kind}): {escape(str(error))}[/red]")
        code = error.exit_code
    except KeyboardInterrupt:
        err_console.print("[dim]\nCancelled.[/dim]")
        code = EXIT_USER_ERROR

    try:
        ctx.usage_log.log_usage(args.command, used_flags(argv), success=code == EXIT_OK,
                                account=getattr(args, 'account', None))
    except (InboxdError, OSError) as error:
        logger.warning(f"Could not record usage: {error}")

    return code


if __name__ == "__main__":
    sys.exit(main())
