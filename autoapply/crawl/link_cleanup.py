from __future__ import annotations

from collections import defaultdict

from autoapply.core.text import jaccard, tokenize
from autoapply.services.repository import JobLinkRecord

SLUG_SIMILARITY_THRESHOLD = 0.8
SLUG_TOKEN_MIN_LENGTH = 3


def posting_slug(url: str) -> str:
    """Text after the posting ID in a ``/view/<id>/<slug>`` URL."""
    _, marker, rest = url.partition("/view/")
    if not marker:
        return ""
    _, separator, slug = rest.partition("/")
    return slug if separator else rest


class _UnionFind:
    def __init__(self) -> None:
        self._parent: dict[int, int] = {}

    def find(self, item: int) -> int:
        parent = self._parent.setdefault(item, item)
        if parent != item:
            parent = self.find(parent)
            self._parent[item] = parent
        return parent

    def union(self, left: int, right: int) -> None:
        left_root = self.find(left)
        right_root = self.find(right)
        if left_root != right_root:
            self._parent[max(left_root, right_root)] = min(left_root, right_root)


def find_duplicate_link_ids(
    links: list[JobLinkRecord],
    *,
    threshold: float = SLUG_SIMILARITY_THRESHOLD,
) -> list[int]:
    """IDs of links to demote: every member of a near-duplicate cluster except its oldest.

    Clusters never span users.
    """
    by_user: dict[int, list[JobLinkRecord]] = defaultdict(list)
    for link in links:
        by_user[link.user_id].append(link)

    demote: list[int] = []
    for user_links in by_user.values():
        demote.extend(_cluster_duplicates(user_links, threshold))
    return sorted(demote)


def _cluster_duplicates(links: list[JobLinkRecord], threshold: float) -> list[int]:
    tokens_by_id = {link.id: tokenize(posting_slug(link.url), min_length=SLUG_TOKEN_MIN_LENGTH) for link in links}
    token_index: dict[str, set[int]] = defaultdict(set)
    for link_id, tokens in tokens_by_id.items():
        for token in tokens:
            token_index[token].add(link_id)

    union_find = _UnionFind()
    compared: set[tuple[int, int]] = set()
    for link_id, tokens in tokens_by_id.items():
        union_find.find(link_id)
        candidates = set().union(*(token_index[token] for token in tokens)) if tokens else set()
        for other_id in candidates:
            if other_id == link_id:
                continue
            pair = (min(link_id, other_id), max(link_id, other_id))
            if pair in compared:
                continue
            compared.add(pair)
            if jaccard(tokens, tokens_by_id[other_id]) >= threshold:
                union_find.union(link_id, other_id)

    clusters: dict[int, list[int]] = defaultdict(list)
    for link_id in tokens_by_id:
        clusters[union_find.find(link_id)].append(link_id)

    demote: list[int] = []
    for members in clusters.values():
        if len(members) > 1:
            members.sort()
            demote.extend(members[1:])
    return demote
