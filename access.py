"""NFT-gated access decisions. Pure functions over episode/comic documents."""
from enum import Enum
from typing import Callable, Iterable, Optional


class AccessDecision(str, Enum):
    GRANTED = "granted"
    PREVIEW_ONLY = "preview-only"
    DENIED = "denied"


PaymentCheck = Callable[[dict, str], bool]


def holds_nft(episode: dict, account_id: Optional[str]) -> bool:
    if not account_id:
        return False
    return any(nft.get("owner") == account_id for nft in episode.get("minted_nfts", []))


def can_access(episode: dict, account_id: Optional[str], has_paid: Optional[PaymentCheck] = None) -> AccessDecision:
    """Decide whether ``account_id`` may read ``episode``.

    Free episodes are open to everyone, public ones show a preview, NFT-gated
    ones require the account in the minted-NFT mirror, and paid ones defer to
    ``has_paid`` (denied when no payment check is wired in).
    """
    access_type = episode.get("access_type", "nft-holders")
    if episode.get("is_free") or access_type == "free":
        return AccessDecision.GRANTED
    if access_type == "public":
        return AccessDecision.PREVIEW_ONLY
    if access_type == "nft-holders":
        return AccessDecision.GRANTED if holds_nft(episode, account_id) else AccessDecision.DENIED
    if access_type == "paid":
        if account_id and has_paid is not None and has_paid(episode, account_id):
            return AccessDecision.GRANTED
        return AccessDecision.DENIED
    return AccessDecision.DENIED


def holds_any_nft(comic: dict, episodes: Iterable[dict], account_id: Optional[str]) -> bool:
    """Comic-level gate: the account owns an NFT of any episode, or of the comic itself."""
    if not account_id:
        return False
    if any(nft.get("owner") == account_id for nft in comic.get("nfts", [])):
        return True
    return any(holds_nft(episode, account_id) for episode in episodes)
