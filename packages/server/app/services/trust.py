"""Registry of predicates deciding which confirmation redirect URLs are trusted."""

from __future__ import annotations

from typing import Callable, Optional
from urllib.parse import ParseResult, urlparse

from app.models.account import Account

TrustPolicy = Callable[[Optional[Account], ParseResult], bool]


class RedirectTrustRegistry:
    """Built once at application bootstrap and handed to the lifecycle manager."""

    def __init__(self, policies: Optional[list[TrustPolicy]] = None):
        self._policies: list[TrustPolicy] = list(policies or [])

    def add(self, policy: TrustPolicy) -> TrustPolicy:
        """Register a policy. Usable as a decorator."""
        self._policies.append(policy)
        return policy

    def is_trusted(self, account: Optional[Account], redirect_url: str) -> bool:
        try:
            uri = urlparse(redirect_url)
        except ValueError:
            return False
        if uri.scheme not in ("http", "https") or not uri.netloc:
            return False
        return any(policy(account, uri) for policy in self._policies)


def same_host_policy(account: Optional[Account], uri: ParseResult) -> bool:
    """Trust redirects back to the account's own host."""
    return account is not None and account.host is not None and uri.hostname == account.host
