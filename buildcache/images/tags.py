"""Tag policy for manifest lists.

| Trigger           | commit | ref | latest |
|-------------------|--------|-----|--------|
| branch build      | yes    | yes | no     |
| release tag build | yes    | yes | yes    |
"""

from __future__ import annotations

from collections.abc import Iterable

from buildcache.images.models import TriggerContext, sanitize_tag
from buildcache.types import TagKind

LATEST_TAG = "latest"


def manifest_tags(trigger: TriggerContext) -> dict[TagKind, str]:
    """Return the tags manifest lists are pushed under for a trigger.

    Args:
        trigger: Commit and ref of the run.

    Returns:
        Ordered mapping of tag kind to tag; `latest` only for release tags.
    """
    tags = {
        TagKind.COMMIT: sanitize_tag(trigger.commit_sha),
        TagKind.REF: sanitize_tag(trigger.ref_name),
    }
    if trigger.is_release_tag:
        tags[TagKind.LATEST] = LATEST_TAG
    return tags


def should_publish(trigger: TriggerContext, branches: Iterable[str]) -> bool:
    """Return True if images are published for this trigger.

    Release tags always publish; branch builds publish only for the
    configured branches.
    """
    if trigger.is_release_tag:
        return True
    return trigger.ref_name in set(branches)


__all__ = ["LATEST_TAG", "manifest_tags", "should_publish"]
