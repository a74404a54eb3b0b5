from __future__ import annotations

from typing import Optional

from notevault.core.access.models import Actor, Decision, DenialReason, NoteAction, Role
from notevault.core.notes.models import AccessLevel, Note


OWNER_ACTIONS = frozenset(NoteAction)

ADMIN_ACTIONS = frozenset(
    {
        NoteAction.view,
        NoteAction.export,
        NoteAction.modify,
        NoteAction.category_assign,
        NoteAction.privacy_change,
    }
)

READ_ACTIONS = frozenset({NoteAction.view, NoteAction.export})


def _has_reason(reason: Optional[str]) -> bool:
    return bool(str(reason or "").strip())


class AccessControlEvaluator:
    """
    Decides whether an actor may perform an action on a note.

    evaluate() is pure: it never raises and never writes. Denials come back as
    Decision values; the caller audits them.
    """

    def evaluate(self, actor: Actor, note: Note, action: NoteAction, reason: Optional[str] = None) -> Decision:
        act = NoteAction(action)
        ps = note.privacy_settings

        # Note-level switches apply to everyone, owner included.
        if act == NoteAction.export and not ps.allow_export:
            return Decision.deny(DenialReason.export_disabled)
        if act == NoteAction.share and not ps.allow_sharing:
            return Decision.deny(DenialReason.sharing_disabled)
        if act == NoteAction.delete and note.legal_hold:
            return Decision.deny(DenialReason.legal_hold)

        if actor.role == Role.system:
            return Decision.allow()
        if actor.user_id == note.owner_id:
            return Decision.allow() if act in OWNER_ACTIONS else Decision.deny(DenialReason.insufficient_access_level)
        if actor.role == Role.admin and act in ADMIN_ACTIONS:
            return Decision.allow()

        if act not in READ_ACTIONS:
            return Decision.deny(DenialReason.insufficient_access_level)

        if self._tier_grants(actor, note) or self._share_grants(actor, note, act):
            if ps.require_reason_for_access and not _has_reason(reason):
                return Decision.deny(DenialReason.reason_required)
            return Decision.allow()

        return Decision.deny(DenialReason.insufficient_access_level)

    # ---- grants ----
    @staticmethod
    def _same_org(actor: Actor, note: Note) -> bool:
        return bool(note.org_id) and actor.org_id == note.org_id

    def _tier_grants(self, actor: Actor, note: Note) -> bool:
        level = note.access_level
        if level == AccessLevel.private:
            return False
        if level == AccessLevel.supervisor:
            return actor.role == Role.supervisor and self._same_org(actor, note)
        if level == AccessLevel.team:
            return actor.role in {Role.coach, Role.supervisor} and bool(note.team_id) and note.team_id in actor.team_ids
        if level == AccessLevel.organization:
            return actor.role in {Role.coach, Role.supervisor} and self._same_org(actor, note)
        return False

    @staticmethod
    def _share_grants(actor: Actor, note: Note, action: NoteAction) -> bool:
        if not note.privacy_settings.allow_sharing or actor.user_id not in note.shared_with:
            return False
        if action == NoteAction.view:
            return note.access_level != AccessLevel.private
        return True
