"""
Action Engine - reversible mailbox operations backed by write-ahead audit logs

Forward (delete, archive): resolve metadata, append audit entries in one write,
apply remotely, then drop entries whose remote call failed for good.
Reverse (restore, unarchive): apply the inverse, then drop the entries that
succeeded. Mark-read/mark-unread are plain label flips with no audit trail.
"""

import logging
from collections import OrderedDict
from typing import Callable, List, Dict, Optional, Tuple

from inboxd import config
from inboxd.audit import AuditLog, entry_for
from inboxd.client import failed_result
from inboxd.errors import InboxdError, NotFound, UnsafeBatch, UsageError
from inboxd.messages import contains
from inboxd.models import EmailMessage, ActionResult, FilterPreview, Operation, inverse


logger = logging.getLogger(__name__)

FORWARD_OPERATIONS = (Operation.DELETE, Operation.ARCHIVE, Operation.MARK_READ, Operation.MARK_UNREAD)
REVERSE_OPERATIONS = (Operation.RESTORE, Operation.UNARCHIVE)


def _unique(ids: List[str]) -> List[str]:
    return list(OrderedDict.fromkeys(i for i in ids if i))


def safety_warnings(sender: Optional[str], match: Optional[str], count: int,
                    min_length: int = config.SHORT_PATTERN_LENGTH,
                    max_batch: int = config.LARGE_BATCH_SIZE) -> List[str]:
    """Warnings for a pattern-selected batch; empty means safe"""
    warnings = []
    if sender and len(sender) < min_length:
        warnings.append(f'Short sender pattern "{sender}": short pattern may match broadly')
    if match and len(match) < min_length:
        warnings.append(f'Short subject pattern "{match}": short pattern may match broadly')
    if count > max_batch:
        warnings.append(f'{count} emails match: large batch')
    return warnings


def matches_filters(message: EmailMessage, sender: Optional[str], match: Optional[str]) -> bool:
    """Both given patterns must match (case-insensitive substrings)"""
    if sender and not contains(message.sender, sender):
        return False
    if match and not contains(message.subject, match):
        return False
    return True


class ActionEngine:
    """Applies and reverses destructive operations through the audit logs"""

    def __init__(self, client, deletion_log: AuditLog, archive_log: AuditLog):
        self.client = client
        self.deletion_log = deletion_log
        self.archive_log = archive_log

    def audit_log_for(self, op: Operation) -> Optional[AuditLog]:
        """Log that records a forward op; None for label flips"""
        if op == Operation.DELETE:
            return self.deletion_log
        if op == Operation.ARCHIVE:
            return self.archive_log
        return None

    # === Forward ===

    async def resolve(self, account: str, ids: List[str]) -> Tuple[List[EmailMessage], List[ActionResult]]:
        """Metadata for each id; ids that cannot be fetched become failed results"""
        messages = []
        failures = []
        for message_id in _unique(ids):
            try:
                messages.append(await self.client.get_message(account, message_id))
            except InboxdError as error:
                logger.warning(f"Could not fetch {message_id} from {account}: {error}")
                failures.append(failed_result(message_id, account, error))
        return messages, failures

    async def select(self, account: str, ids: List[str], sender: Optional[str] = None,
                     match: Optional[str] = None) -> Tuple[List[EmailMessage], List[ActionResult]]:
        """Resolve ids, then keep the messages both filters match"""
        messages, failures = await self.resolve(account, ids)
        if sender or match:
            messages = [m for m in messages if matches_filters(m, sender, match)]
        return messages, failures

    async def forward(self, account: str, op: Operation, ids: List[str],
                      sender: Optional[str] = None, match: Optional[str] = None,
                      confirm_fn: Optional[Callable[[FilterPreview], None]] = None) -> List[ActionResult]:
        """
        Apply op to ids of one account, results in input order

        sender/match narrow the resolved set. confirm_fn sees the resolved
        messages before anything is logged or applied and raises to abort.
        """
        if op not in FORWARD_OPERATIONS:
            raise ValueError(f"{op.value} is not a forward operation")

        ids = _unique(ids)
        log = self.audit_log_for(op)
        if log is None and not (sender or match) and confirm_fn is None:
            return await self.client.batch(account, ids, op)

        messages, failures = await self.select(account, ids, sender, match)
        if messages and confirm_fn is not None:
            confirm_fn(FilterPreview(messages=messages))

        if log is None:
            results = await self.client.batch(account, [m.id for m in messages], op) + failures
        else:
            results = await self.apply_logged(op, messages, failures)

        by_id = {r.id: r for r in results}
        return [by_id[i] for i in ids if i in by_id]

    async def apply_logged(self, op: Operation, messages: List[EmailMessage],
                           failures: Optional[List[ActionResult]] = None) -> List[ActionResult]:
        """Steps append, apply and reconcile for already-resolved messages"""
        log = self.audit_log_for(op)
        failures = failures or []
        results: Dict[Tuple[Optional[str], str], ActionResult] = {(f.account, f.id): f for f in failures}

        if messages:
            log.append([entry_for(m) for m in messages])

        abandoned: Dict[str, List[str]] = OrderedDict()
        for message in messages:
            try:
                await self.client.apply(message.account, op, message.id)
                results[(message.account, message.id)] = ActionResult(id=message.id, success=True, account=message.account)
            except InboxdError as error:
                logger.error(f"Error applying {op.value} to {message.id}: {error}")
                results[(message.account, message.id)] = failed_result(message.id, message.account, error)
                if not error.retryable:
                    abandoned.setdefault(message.account, []).append(message.id)

        for account, ids in abandoned.items():
            removed = log.remove_by_ids(ids, account=account)
            logger.info(f"Removed {removed} audit entries for failed {op.value} on {account}")

        ordered = [(m.account, m.id) for m in messages] + [(f.account, f.id) for f in failures]
        return [results[key] for key in ordered]

    async def delete(self, account: str, ids: List[str], **options) -> List[ActionResult]:
        return await self.forward(account, Operation.DELETE, ids, **options)

    async def archive(self, account: str, ids: List[str], **options) -> List[ActionResult]:
        return await self.forward(account, Operation.ARCHIVE, ids, **options)

    async def mark_read(self, account: str, ids: List[str]) -> List[ActionResult]:
        return await self.forward(account, Operation.MARK_READ, ids)

    async def mark_unread(self, account: str, ids: List[str]) -> List[ActionResult]:
        return await self.forward(account, Operation.MARK_UNREAD, ids)

    # === Reverse ===

    def select_entries(self, op: Operation, ids: Optional[List[str]] = None, last: Optional[int] = None,
                       account: Optional[str] = None) -> Tuple[List[Dict], List[ActionResult]]:
        """Entries to reverse plus failed results for ids the log does not know"""
        log = self.audit_log_for(inverse(op))
        if ids:
            ids = _unique(ids)
            found = log.find(ids)
            entries = []
            missing = []
            for message_id in ids:
                entry = found.get(message_id)
                if entry and (account is None or entry.get('account') == account):
                    entries.append(entry)
                else:
                    missing.append(ActionResult(
                        id=message_id, success=False, account=account,
                        error_kind=NotFound.kind, error=f"{message_id} is not in the {log.path.name}"
                    ))
            return entries, missing

        if last:
            return log.recent(last, account=account), []

        raise UsageError('Specify ids or a number of recent entries to reverse')

    async def reverse(self, op: Operation, ids: Optional[List[str]] = None, last: Optional[int] = None,
                      account: Optional[str] = None) -> List[ActionResult]:
        """Apply op (restore/unarchive) to logged entries, unlogging each success"""
        if op not in REVERSE_OPERATIONS:
            raise ValueError(f"{op.value} is not a reverse operation")

        log = self.audit_log_for(inverse(op))
        entries, missing = self.select_entries(op, ids, last, account)

        by_account: Dict[str, List[Dict]] = OrderedDict()
        for entry in entries:
            by_account.setdefault(entry.get('account') or 'default', []).append(entry)

        results = []
        for entry_account, account_entries in by_account.items():
            done = []
            for entry in account_entries:
                message_id = entry['id']
                try:
                    await self.client.apply(entry_account, op, message_id)
                    results.append(ActionResult(id=message_id, success=True, account=entry_account))
                    done.append(message_id)
                except NotFound as error:
                    # Provider no longer has it (trash emptied or expired); the entry is stale
                    results.append(failed_result(message_id, entry_account, error))
                    done.append(message_id)
                except InboxdError as error:
                    logger.error(f"Error applying {op.value} to {message_id}: {error}")
                    results.append(failed_result(message_id, entry_account, error))

            if done:
                log.remove_by_ids(done, account=entry_account)

        results.extend(missing)
        if ids:
            position = {message_id: index for index, message_id in enumerate(_unique(ids))}
            results.sort(key=lambda r: position.get(r.id, len(position)))
        return results

    async def restore(self, ids: Optional[List[str]] = None, last: Optional[int] = None,
                      account: Optional[str] = None) -> List[ActionResult]:
        return await self.reverse(Operation.RESTORE, ids, last, account)

    async def unarchive(self, ids: Optional[List[str]] = None, last: Optional[int] = None,
                        account: Optional[str] = None) -> List[ActionResult]:
        return await self.reverse(Operation.UNARCHIVE, ids, last, account)

    # === Pattern-selected batches ===

    async def preview(self, accounts: List[str], sender: Optional[str] = None, match: Optional[str] = None,
                      limit: int = config.FILTER_DEFAULT_LIMIT) -> FilterPreview:
        """Unread inbox messages matching the filters, capped at limit, with warnings"""
        if not sender and not match:
            raise UsageError('Must specify --ids or filter flags (--sender, --match)')

        matched = []
        for account in accounts:
            ids = await self.client.list_unread(account, max_results=limit)
            for message in await self.client.get_messages(account, ids):
                if matches_filters(message, sender, match):
                    matched.append(message)

        if len(matched) > limit:
            logger.info(f"Found {len(matched)} matches, limiting to {limit}")
            matched = matched[:limit]

        return FilterPreview(messages=matched, warnings=safety_warnings(sender, match, len(matched)))

    async def forward_by_filter(self, accounts: List[str], op: Operation, sender: Optional[str] = None,
                                match: Optional[str] = None, limit: int = config.FILTER_DEFAULT_LIMIT,
                                dry_run: bool = False, force: bool = False,
                                confirm_fn: Optional[Callable[[FilterPreview], None]] = None
                                ) -> Tuple[FilterPreview, List[ActionResult]]:
        """Preview, check the guards, confirm, then run the forward contract on the matches"""
        preview = await self.preview(accounts, sender, match, limit)
        if dry_run or not preview.messages:
            return preview, []
        self.check_guards(preview, force)
        if confirm_fn is not None:
            confirm_fn(preview)
        return preview, await self.apply_resolved(op, preview.messages)

    @staticmethod
    def check_guards(preview: FilterPreview, force: bool = False) -> None:
        """UnsafeBatch unless the preview is warning-free or forced"""
        if preview.warnings and not force:
            raise UnsafeBatch(preview.warnings)

    async def apply_resolved(self, op: Operation, messages: List[EmailMessage]) -> List[ActionResult]:
        """Forward contract for messages whose metadata is already in hand"""
        if self.audit_log_for(op) is not None:
            return await self.apply_logged(op, messages)

        results = []
        for account in OrderedDict.fromkeys(m.account for m in messages):
            ids = [m.id for m in messages if m.account == account]
            results.extend(await self.client.batch(account, ids, op))
        return results
