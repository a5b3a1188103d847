"""Trigger events that may start a publishing run."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field

_BRANCH_PREFIX = "refs/heads/"


@dataclass(slots=True, frozen=True)
class TriggerEvent:
    """A push notification: the branch that moved and the commit it now points at."""

    branch: str | None
    commit: str | None = None
    repository: str | None = None
    pusher: str | None = None

    @classmethod
    def from_ref(
        cls,
        ref: str,
        commit: str | None = None,
        *,
        repository: str | None = None,
        pusher: str | None = None,
    ) -> "TriggerEvent":
        """Build an event from a full Git ref such as ``refs/heads/main``.

        Tag and other non-branch refs produce an event without a branch, which
        never matches a branch allow-list.
        """

        ref = (ref or "").strip()
        if ref.startswith(_BRANCH_PREFIX):
            branch: str | None = ref[len(_BRANCH_PREFIX):] or None
        elif ref.startswith("refs/"):
            branch = None
        else:
            branch = ref or None
        return cls(branch=branch, commit=(commit or None), repository=repository, pusher=pusher)


class WebhookRepository(BaseModel):
    """Repository metadata from the webhook payload."""

    full_name: str
    clone_url: str | None = None
    default_branch: str = "main"


class WebhookPusher(BaseModel):
    name: str | None = None
    email: str | None = None


class PushWebhookPayload(BaseModel):
    """Subset of the GitHub ``push`` webhook payload used to trigger runs."""

    ref: str
    before: str = ""
    after: str = ""
    repository: WebhookRepository
    pusher: WebhookPusher = Field(default_factory=WebhookPusher)
    created: bool = False
    deleted: bool = False
    forced: bool = False

    def to_event(self) -> TriggerEvent | None:
        """Return the trigger event, or ``None`` for branch deletions."""

        if self.deleted:
            return None
        return TriggerEvent.from_ref(
            self.ref,
            self.after or None,
            repository=self.repository.full_name,
            pusher=self.pusher.name,
        )
