import logging
from contextlib import asynccontextmanager
from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from member_intranet import config
from member_intranet.db.deps import get_content_db, get_user_db
from member_intranet.db.session import SessionLocalContent, init_db
from member_intranet.exceptions import IntranetError
from member_intranet.logging_setup import setup_logging
from member_intranet.scheduler import MailQueueScheduler
from member_intranet.schemas.mass_mail import MassMailRequest
from member_intranet.schemas.rentals import (
    ConfirmReturnRequest,
    CreateRentalRequestDto,
    DecisionRequest,
    LegacyCheckoutRequest,
    RejectRequest,
)
from member_intranet.services import catalog_service, catalog_sync_service, mass_mail_service, rental_service
from member_intranet.services.mail_service import get_email_gateway
from member_intranet.services.user_access_service import ActorContext, actor_from_session, get_session, remove_session

logger = logging.getLogger("member_intranet.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL)
    init_db()
    scheduler = None
    if config.MAIL_QUEUE_SCHEDULER_ENABLED:
        scheduler = MailQueueScheduler(SessionLocalContent)
        scheduler.start()
    app.state.mail_scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IntranetError)
async def intranet_error_handler(request: Request, exc: IntranetError):
    if exc.status_code >= 500:
        logger.error(
            "Request failed: %s",
            exc.message,
            extra={"event": "request_failed", "context": {"path": request.url.path, "error": type(exc).__name__}},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_actor(x_session_token: str | None = Header(None, alias="X-Session-Token")) -> ActorContext:
    actor = actor_from_session(get_session(x_session_token))
    if actor is None:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return actor


def get_gateway():
    return get_email_gateway()


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_content_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc
    scheduler = getattr(app.state, "mail_scheduler", None)
    return {"status": "ok", "mailScheduler": scheduler.status() if scheduler else None}


@app.post("/api/auth/logout")
def auth_logout(x_session_token: str | None = Header(None, alias="X-Session-Token")):
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(actor: ActorContext = Depends(get_actor)):
    return {"userID": actor.user_id, "role": actor.role, "email": actor.email, "isBoard": actor.is_board}


@app.get("/api/inventory/items")
def get_inventory_items(
    search: str | None = Query(None),
    category: str | None = Query(None),
    location: str | None = Query(None),
    db: Session = Depends(get_content_db),
    actor: ActorContext = Depends(get_actor),
):
    return catalog_service.list_items_with_availability(db, search, category, location)


@app.get("/api/inventory/stats")
def get_inventory_stats(db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    return catalog_service.get_inventory_stats(db)


@app.get("/api/inventory/export.csv")
def export_inventory_csv(db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    if not actor.can_view_rental_overview:
        raise HTTPException(status_code=403, detail="Board role required.")
    content = catalog_service.export_items_csv(db)
    filename = f"inventory_{date.today().isoformat()}.csv"
    return Response(
        content="\ufeff" + content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/inventory/sync")
def sync_inventory(db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    if not actor.is_board:
        raise HTTPException(status_code=403, detail="Board role required.")
    return catalog_sync_service.sync_catalog(db, actor.user_id)


@app.get("/api/inventory/items/{item_id}")
def get_inventory_item(item_id: int, db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    item = catalog_service.get_item(db, item_id)
    consumed = catalog_service.get_consumed_quantities(db, [item.ItemID]).get(item.ItemID, 0)
    return catalog_service.serialize_item(item, consumed)


@app.get("/api/inventory/items/{item_id}/availability")
def get_item_availability(
    item_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    quantity: int = Query(1),
    db: Session = Depends(get_content_db),
    actor: ActorContext = Depends(get_actor),
):
    return rental_service.check_availability(db, item_id, quantity, start_date, end_date)


@app.post("/api/rental-requests", status_code=201)
def create_rental_request(
    payload: CreateRentalRequestDto,
    db: Session = Depends(get_content_db),
    actor: ActorContext = Depends(get_actor),
):
    row = rental_service.submit_request(
        db,
        actor,
        payload.itemID,
        payload.quantity,
        payload.startDate,
        payload.endDate,
        payload.purpose,
    )
    return rental_service.request_view(row).to_dict()


@app.post("/api/rental-requests/{request_id}/decide")
def decide_rental_request(
    request_id: int,
    payload: DecisionRequest,
    db: Session = Depends(get_content_db),
    actor: ActorContext = Depends(get_actor),
):
    row = rental_service.decide_request(db, actor, request_id, payload.decision, payload.reason)
    return rental_service.request_view(row).to_dict()


@app.post("/api/rental-requests/{request_id}/approve")
def approve_rental_request(request_id: int, db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    row = rental_service.approve_request(db, actor, request_id)
    return rental_service.request_view(row).to_dict()


@app.post("/api/rental-requests/{request_id}/reject")
def reject_rental_request(
    request_id: int,
    payload: RejectRequest | None = None,
    db: Session = Depends(get_content_db),
    actor: ActorContext = Depends(get_actor),
):
    row = rental_service.reject_request(db, actor, request_id, payload.reason if payload else None)
    return rental_service.request_view(row).to_dict()


@app.post("/api/rental-requests/{request_id}/request-return")
def request_rental_return(request_id: int, db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    return rental_service.report_return(db, actor, request_id)


@app.post("/api/rental-requests/{request_id}/confirm-return")
def confirm_rental_return(
    request_id: int,
    payload: ConfirmReturnRequest,
    db: Session = Depends(get_content_db),
    user_db: Session = Depends(get_user_db),
    gateway=Depends(get_gateway),
    actor: ActorContext = Depends(get_actor),
):
    return rental_service.confirm_return(db, actor, request_id, payload.condition, payload.notes, user_db=user_db, gateway=gateway)


@app.post("/api/legacy-rentals", status_code=201)
def create_legacy_rental(
    payload: LegacyCheckoutRequest,
    db: Session = Depends(get_content_db),
    actor: ActorContext = Depends(get_actor),
):
    row = rental_service.create_legacy_rental(db, actor, payload.itemID, payload.quantity, payload.purpose, payload.expectedReturn)
    return rental_service.legacy_view(row).to_dict()


@app.post("/api/legacy-rentals/{rental_id}/request-return")
def request_legacy_return(rental_id: int, db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    return rental_service.report_legacy_return(db, actor, rental_id)


@app.post("/api/legacy-rentals/{rental_id}/confirm-return")
def confirm_legacy_return(
    rental_id: int,
    payload: ConfirmReturnRequest,
    db: Session = Depends(get_content_db),
    user_db: Session = Depends(get_user_db),
    gateway=Depends(get_gateway),
    actor: ActorContext = Depends(get_actor),
):
    return rental_service.confirm_legacy_return(db, actor, rental_id, payload.condition, payload.notes, user_db=user_db, gateway=gateway)


@app.get("/api/rentals/mine")
def get_my_rentals(
    db: Session = Depends(get_content_db),
    user_db: Session = Depends(get_user_db),
    actor: ActorContext = Depends(get_actor),
):
    return rental_service.list_rentals_for_user(db, user_db, actor.user_id)


@app.get("/api/rentals/by-item/{item_id}")
def get_rentals_for_item(
    item_id: int,
    include_closed: bool = Query(False, alias="includeClosed"),
    db: Session = Depends(get_content_db),
    user_db: Session = Depends(get_user_db),
    actor: ActorContext = Depends(get_actor),
):
    if not actor.can_view_rental_overview:
        raise HTTPException(status_code=403, detail="Board role required.")
    return rental_service.list_rentals_for_item(db, user_db, item_id, include_closed=include_closed)


@app.get("/api/admin/rentals/overview")
def get_rental_overview(
    db: Session = Depends(get_content_db),
    user_db: Session = Depends(get_user_db),
    actor: ActorContext = Depends(get_actor),
):
    return rental_service.get_board_overview(db, user_db, actor)


@app.post("/api/admin/mass-mail")
def create_mass_mail(
    payload: MassMailRequest,
    db: Session = Depends(get_content_db),
    user_db: Session = Depends(get_user_db),
    gateway=Depends(get_gateway),
    actor: ActorContext = Depends(get_actor),
):
    if not actor.is_board:
        raise HTTPException(status_code=403, detail="Board role required.")
    recipients = mass_mail_service.collect_recipients(user_db, payload.recipientsCsv, payload.userIDs)
    return mass_mail_service.send_mass_mail(db, actor, gateway, payload.subject, payload.body, recipients, event_id=payload.eventID)


@app.get("/api/admin/mass-mail/jobs")
def get_mass_mail_jobs(
    status: str | None = Query(None),
    db: Session = Depends(get_content_db),
    actor: ActorContext = Depends(get_actor),
):
    if not actor.is_board:
        raise HTTPException(status_code=403, detail="Board role required.")
    return mass_mail_service.list_jobs(db, status)


@app.get("/api/admin/mass-mail/jobs/{job_id}")
def get_mass_mail_job(job_id: int, db: Session = Depends(get_content_db), actor: ActorContext = Depends(get_actor)):
    if not actor.is_board:
        raise HTTPException(status_code=403, detail="Board role required.")
    return mass_mail_service.get_job(db, job_id)


@app.post("/api/admin/mass-mail/jobs/{job_id}/resume")
def resume_mass_mail_job(
    job_id: int,
    db: Session = Depends(get_content_db),
    gateway=Depends(get_gateway),
    actor: ActorContext = Depends(get_actor),
):
    return mass_mail_service.resume_job(db, actor, gateway, job_id)
