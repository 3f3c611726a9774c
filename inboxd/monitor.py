"""
Notification Check - new-mail detection, rule auto-apply and desktop notifications
"""

import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Callable

from inboxd import config
from inboxd.errors import InboxdError
from inboxd.models import EmailMessage, ActionResult
from inboxd.notifier import notify_new_emails
from inboxd.rules import RulesStore, RULE_OPERATIONS, evaluate


logger = logging.getLogger(__name__)

CHECK_MAX_RESULTS = 20


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CheckResult:
    """What one account's check found and did"""
    account: str
    new_messages: List[EmailMessage] = field(default_factory=list)
    notified: List[EmailMessage] = field(default_factory=list)
    auto_applied: List[ActionResult] = field(default_factory=list)
    suppressed: bool = False
    error: Optional[str] = None

    def to_dict(self):
        return {
            'account': self.account,
            'new': len(self.new_messages),
            'notified': [m.id for m in self.notified],
            'autoApplied': [r.to_dict() for r in self.auto_applied],
            'suppressed': self.suppressed,
            'error': self.error,
        }


class NotificationCheck:
    """One pass of `inbox check` over a set of accounts"""

    def __init__(
        self,
        client,
        seen_state,
        rules_store: RulesStore,
        engine,
        notify_fn: Callable[[List[EmailMessage]], object] = notify_new_emails,
        clock: Callable[[], int] = _now_ms,
        min_interval_seconds: float = config.NOTIFY_MIN_INTERVAL_SECONDS,
        max_results: int = CHECK_MAX_RESULTS
    ):
        self.client = client
        self.seen_state = seen_state
        self.rules_store = rules_store
        self.engine = engine
        self.notify_fn = notify_fn
        self.clock = clock
        self.min_interval_ms = int(min_interval_seconds * 1000)
        self.max_results = max_results

    # === Main Entry Point ===

    async def run(self, accounts: List[str]) -> List[CheckResult]:
        """Check every account; one account failing does not stop the others"""
        results = []
        for account in accounts:
            try:
                results.append(await self.check_account(account))
            except InboxdError as error:
                logger.error(f"Check failed for {account}: {error}")
                results.append(CheckResult(account=account, error=str(error)))
        return results

    async def check_account(self, account: str) -> CheckResult:
        result = CheckResult(account=account)

        unread_ids = await self.client.list_unread(account, max_results=self.max_results)
        new_ids = self.seen_state.get_new(account, unread_ids)
        result.new_messages = await self.client.get_messages(account, new_ids)

        rules = self.rules_store.list_rules()
        candidates = []
        for message in result.new_messages:
            rule = evaluate(rules, message)
            if rule is None:
                candidates.append(message)
                continue

            logger.info(f"Rule {rule.id} ({rule.action.value}) matched {message.id} on {account}")
            result.auto_applied.extend(await self.engine.apply_resolved(RULE_OPERATIONS[rule.action], [message]))
            self.seen_state.mark_seen(account, [message.id])

        if candidates:
            if self._rate_limited(account):
                # Left unseen so the next check notifies them
                logger.info(f"Suppressing notification for {len(candidates)} message(s) on {account}")
                result.suppressed = True
            else:
                self.notify_fn(candidates)
                result.notified = candidates
                self.seen_state.update_last_notified_at(account)
                self.seen_state.mark_seen(account, [m.id for m in candidates])

        self.seen_state.update_last_check(account)
        return result

    def _rate_limited(self, account: str) -> bool:
        last = self.seen_state.last_notified_at(account)
        return last is not None and self.clock() - last < self.min_interval_ms
