"""Platform announcements.

Learn: Support staff publish announcements to a tier ("customers",
"restaurants", "drivers") or to everyone ("all"). Publishing does two
things:
1. the row is stored, so GET /announcements/active can serve late joiners
2. unless it's scheduled for later, it's broadcast right away on
   announcements-{tier} through the coordinator (local room + broker)

A scheduled announcement is stored but not broadcast; clients pick it up
from /announcements/active once it's due.
"""

from fastapi import APIRouter, Depends

from orderpulse.api.deps import get_coordinator, get_store, not_found
from orderpulse.auth.dependencies import Principal, get_current_principal, require_roles
from orderpulse.db.store import AnnouncementRecord, RecordStore
from orderpulse.realtime import events as ev
from orderpulse.realtime.coordinator import DeliveryCoordinator, announcement_priority
from orderpulse.schemas.support import AnnouncementCreate

router = APIRouter()


def announcement_body(a: AnnouncementRecord) -> dict:
    return {
        "id": a.id,
        "title": a.title,
        "message": a.message,
        "type": a.announcement_type,
        "targetAudience": a.target_audience,
        "priority": announcement_priority(a.announcement_type),
        "isActive": a.is_active,
        "scheduledAt": ev.isoformat(a.scheduled_at),
        "expiresAt": ev.isoformat(a.expires_at),
        "createdAt": ev.isoformat(a.created_at),
    }


@router.post("/announcements", status_code=201)
async def create_announcement(
    body: AnnouncementCreate,
    principal: Principal = Depends(require_roles("support")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Store an announcement and broadcast it unless it's scheduled for later."""
    announcement = await store.create_announcement(
        title=body.title,
        message=body.message,
        announcement_type=body.announcement_type,
        target_audience=body.target_audience,
        scheduled_at=ev.as_utc(body.scheduled_at),
        expires_at=ev.as_utc(body.expires_at),
    )

    scheduled = announcement.scheduled_at is not None and ev.as_utc(
        announcement.scheduled_at
    ) > ev.utc_now()
    if not scheduled:
        await coordinator.deliver(
            ev.AnnouncementPublished(
                announcement_id=announcement.id,
                title=announcement.title,
                message=announcement.message,
                announcement_type=announcement.announcement_type,
                target_audience=announcement.target_audience,
                expires_at=announcement.expires_at,
            )
        )
    return {
        **announcement_body(announcement),
        "broadcast": "scheduled" if scheduled else "immediate",
        "createdBy": principal.user_id,
    }


@router.get("/announcements/active")
async def list_active_announcements(
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_store),
):
    """Announcements currently visible to the caller's tier, most urgent first."""
    audience = ev.ROLE_AUDIENCES.get(principal.role, "all")
    return [announcement_body(a) for a in await store.list_active_announcements(audience)]


@router.delete("/announcements/{announcement_id}")
async def deactivate_announcement(
    announcement_id: int,
    principal: Principal = Depends(require_roles("support")),
    store: RecordStore = Depends(get_store),
):
    """Hide an announcement from /active. Already-delivered frames stay delivered."""
    announcement = await store.deactivate_announcement(announcement_id)
    if announcement is None:
        raise not_found("Announcement not found")
    return {"message": "Announcement deactivated", "id": announcement.id}
