"""
Toggle kinds: the three (subject, action) pairs a user can switch on and off.

Each kind binds together everything the coordinator needs to know about
one instantiation: the Redis key namespace, the ORM model holding the
durable toggle records, and the parent model plus counter column kept in
step with those records.

Redis keys::

    {subject_type}:{action}:{subject_id}:{actor_id}     presence flag
    {subject_type}:{action}_count:{subject_id}          live counter
"""
from __future__ import annotations

from dataclasses import dataclass

from greenbook.models import Article, Comment, CommentLike, Favorite, Like


@dataclass(frozen=True)
class ToggleKind:
    name: str
    subject_type: str
    action: str
    record_model: type
    parent_model: type
    counter_field: str

    def flag_key(self, subject_id: int, actor_id: int) -> str:
        return f"{self.subject_type}:{self.action}:{subject_id}:{actor_id}"

    def counter_key(self, subject_id: int) -> str:
        return f"{self.subject_type}:{self.action}_count:{subject_id}"

    def flag_pattern(self, subject_id: int) -> str:
        """SCAN pattern matching every actor's flag for *subject_id*."""
        return f"{self.subject_type}:{self.action}:{subject_id}:*"

    @property
    def counter_column(self):
        return getattr(self.parent_model, self.counter_field)


ARTICLE_LIKE = ToggleKind(
    name="article-like",
    subject_type="article",
    action="like",
    record_model=Like,
    parent_model=Article,
    counter_field="like_count",
)

ARTICLE_FAVORITE = ToggleKind(
    name="article-favorite",
    subject_type="article",
    action="favorite",
    record_model=Favorite,
    parent_model=Article,
    counter_field="favorite_count",
)

# Comments can be liked but not favorited.
COMMENT_LIKE = ToggleKind(
    name="comment-like",
    subject_type="comment",
    action="like",
    record_model=CommentLike,
    parent_model=Comment,
    counter_field="like_count",
)

TOGGLE_KINDS: dict[str, ToggleKind] = {
    kind.name: kind for kind in (ARTICLE_LIKE, ARTICLE_FAVORITE, COMMENT_LIKE)
}


def get_kind(name: str) -> ToggleKind:
    """Look up a kind by name, raising ``KeyError`` for unknown names."""
    try:
        return TOGGLE_KINDS[name]
    except KeyError:
        raise KeyError(f"Unknown toggle kind {name!r}; expected one of {sorted(TOGGLE_KINDS)}") from None
