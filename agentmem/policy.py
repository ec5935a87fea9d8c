"""
Content Governance — Secret and Injection Screening

Hard blocks applied before anything is stored or captured:
- secret-looking tokens (API keys, PATs, private keys, connection URLs)
- long mixed-class tokens that look like credentials
- prompt-override fragments (memories are injected into AGENTS.md)

Never bypassed. Returns reasons instead of raising; callers decide.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

# Secrets detection patterns (conservative)
_SECRET_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9_-]{16,}"),                    # OpenAI-style key
    re.compile(r"\bghp_[A-Za-z0-9]{20,}"),                      # GitHub PAT
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),                        # AWS access key id
    re.compile(r"\bAIza[0-9A-Za-z_-]{20,}"),                    # Google API key
    re.compile(r"\bxox[pbar]-[A-Za-z0-9-]{10,}"),               # Slack token
    re.compile(r"\bkey_live_[A-Za-z0-9]{16,}"),                 # Stripe-style key
    re.compile(r"-----BEGIN\s+(?:RSA\s+|EC\s+|OPENSSH\s+|PGP\s+)?PRIVATE\s+KEY-----",
               re.IGNORECASE),
    re.compile(r"\bBearer\s+[A-Za-z0-9._-]{20,}"),
    re.compile(r"\b(?:api[_-]?key|token|secret|password|passwd)\b\s*[:=]\s*['\"]?"
               r"[A-Za-z0-9._\-/=+]{12,}", re.IGNORECASE),
    re.compile(r"\b(?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis)://\S+",
               re.IGNORECASE),
    re.compile(r"eyJ[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}"),  # JWT
]

# Injection / prompt override patterns
_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:all\s+)?previous\s+instructions?", re.IGNORECASE),
    re.compile(r"forget\s+(?:all\s+)?(?:your\s+)?(?:previous\s+)?instructions?",
               re.IGNORECASE),
    re.compile(r"override\s+(?:system|safety|security)", re.IGNORECASE),
    re.compile(r"<\s*system\s*>", re.IGNORECASE),
    re.compile(r"<!--\s*agentmem:", re.IGNORECASE),
]

_HIGH_ENTROPY_MIN_LEN = 32


def _has_high_entropy_token(text: str) -> bool:
    """A long whitespace-free token mixing letters, digits and symbols."""
    for token in text.split():
        if len(token) < _HIGH_ENTROPY_MIN_LEN:
            continue
        alpha = any(c.isalpha() for c in token)
        digit = any(c.isdigit() for c in token)
        special = any(not c.isalnum() and c not in "-_" for c in token)
        if alpha and digit and special:
            return True
    return False


def is_probably_secret(text: str) -> bool:
    """True when text contains something that looks like a credential."""
    if any(p.search(text) for p in _SECRET_PATTERNS):
        return True
    return _has_high_entropy_token(text)


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


@dataclass
class PolicyVerdict:
    """Result of screening a piece of content."""

    reasons: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        """Return True if no hard block matched."""
        return not self.reasons


def screen_content(text: str) -> PolicyVerdict:
    """Screen content against secret and injection patterns."""
    verdict = PolicyVerdict()
    if is_probably_secret(text):
        verdict.reasons.append("content looks like a secret or token")
    for pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            verdict.reasons.append(
                f"content matches injection pattern: {pattern.pattern}"
            )
            break
    if verdict.reasons:
        logger.debug("Content blocked: %s", "; ".join(verdict.reasons))
    return verdict
