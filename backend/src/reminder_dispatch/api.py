from __future__ import annotations

import hmac
import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from .accounting import AccountingStatusClient, CachedAccountingStatusClient, HttpAccountingStatusClient
from .config import Settings, get_settings
from .executors import ExecutionResult, ReminderExecutor, SmsReminderExecutor, VoiceReminderExecutor
from .models import (
    CallStatusWebhookRequest,
    ExecutionResponse,
    ReminderItem,
    SchedulerRunResponse,
    WebhookAckResponse,
)
from .outcomes import OutcomeHandler
from .reference_data import ReferenceDataRepository, create_reference_data_repository
from .reminder_store import (
    ReminderNotFoundError,
    ReminderRecord,
    ReminderRepository,
    SchedulerRunRecord,
    create_reminder_repository,
)
from .schedule_builder import ReminderPlanner
from .scheduler import ReminderScheduler, SchedulerBusyError
from .sms import SmsSender, StubSmsSender, TwilioSmsSender
from .throttle import OutboundThrottleRepository, create_outbound_throttle_repository
from .verification import InvoiceStatusVerifier
from .voice import HttpVoiceDispatcher, StubVoiceDispatcher, VoiceDispatcher
from .webhook_security import verify_call_webhook_signature, verify_twilio_status_signature
from .webhooks import ReminderWebhookService

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])


def _create_accounting_client(settings: Settings, reference_data: ReferenceDataRepository) -> AccountingStatusClient:
    if settings.accounting_client_type == "http":
        return HttpAccountingStatusClient(
            base_url=settings.accounting_api_base_url,
            api_key=settings.accounting_api_key,
            timeout_seconds=settings.accounting_timeout_seconds,
        )
    return CachedAccountingStatusClient(reference_data)


def _create_voice_dispatcher(settings: Settings) -> VoiceDispatcher:
    if settings.voice_dispatcher_type == "http":
        return HttpVoiceDispatcher(
            base_url=settings.voice_api_base_url,
            api_key=settings.voice_api_key,
            timeout_seconds=settings.voice_timeout_seconds,
        )
    return StubVoiceDispatcher(enabled=settings.voice_enabled)


def _create_sms_sender(settings: Settings) -> SmsSender:
    if settings.sms_sender_type == "twilio":
        return TwilioSmsSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            status_callback_url=settings.sms_status_callback_url,
        )
    return StubSmsSender(enabled=settings.sms_enabled)


reminder_repo: ReminderRepository = create_reminder_repository(
    backend=_settings.reminder_store_backend, database_url=_settings.database_url
)
reference_data_repo: ReferenceDataRepository = create_reference_data_repository(
    backend=_settings.reminder_store_backend, database_url=_settings.database_url
)
throttle_repo: OutboundThrottleRepository = create_outbound_throttle_repository(
    backend=_settings.reminder_store_backend, database_url=_settings.database_url
)
voice_dispatcher: VoiceDispatcher = _create_voice_dispatcher(_settings)
sms_sender: SmsSender = _create_sms_sender(_settings)

verifier = InvoiceStatusVerifier(
    accounting=_create_accounting_client(_settings, reference_data_repo),
    reference_data=reference_data_repo,
)
outcome_handler = OutcomeHandler(repository=reminder_repo, reference_data=reference_data_repo, verifier=verifier)
executor = ReminderExecutor(
    repository=reminder_repo,
    outcomes=outcome_handler,
    voice=VoiceReminderExecutor(
        reference_data=reference_data_repo,
        verifier=verifier,
        outcomes=outcome_handler,
        dispatcher=voice_dispatcher,
    ),
    sms=SmsReminderExecutor(
        reference_data=reference_data_repo,
        outcomes=outcome_handler,
        sender=sms_sender,
        character_limit=_settings.sms_character_limit,
    ),
)
scheduler = ReminderScheduler(
    repository=reminder_repo,
    reference_data=reference_data_repo,
    executor=executor,
    outcomes=outcome_handler,
    throttle=throttle_repo,
    in_progress_timeout_minutes=_settings.in_progress_timeout_minutes,
    queued_stale_minutes=_settings.queued_stale_minutes,
    error_rate_alert_threshold=_settings.scheduler_error_rate_alert_threshold,
    batch_limit=_settings.scheduler_batch_limit,
    rate_limit_max=_settings.outbound_rate_limit_max,
    rate_limit_window_seconds=_settings.outbound_rate_limit_window_seconds,
)
webhook_service = ReminderWebhookService(repository=reminder_repo, outcomes=outcome_handler)
planner = ReminderPlanner(repository=reminder_repo, reference_data=reference_data_repo)


def reset_runtime_state_for_tests() -> None:
    reminder_repo.reset()
    reference_data_repo.reset()
    throttle_repo.reset()
    if isinstance(voice_dispatcher, StubVoiceDispatcher):
        voice_dispatcher.calls.clear()
    if isinstance(sms_sender, StubSmsSender):
        sms_sender.messages.clear()


def _require_cron_secret(request: Request) -> None:
    configured = _settings.cron_secret.strip()
    if not configured:
        return
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "cron secret required")
    if not hmac.compare_digest(token, configured):
        raise HTTPException(401, "invalid cron secret")


def _reminder_item(record: ReminderRecord) -> ReminderItem:
    return ReminderItem(**record.__dict__)


def _run_response(record: SchedulerRunRecord) -> SchedulerRunResponse:
    return SchedulerRunResponse(**record.__dict__)


def _execution_response(result: ExecutionResult) -> ExecutionResponse:
    return ExecutionResponse(**result.__dict__)


@router.post("/run/once", response_model=SchedulerRunResponse)
def run_scheduler_once(request: Request) -> SchedulerRunResponse:
    _require_cron_secret(request)
    try:
        run = scheduler.run_once()
    except SchedulerBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _run_response(run)


@router.get("/runs/latest", response_model=SchedulerRunResponse)
def get_latest_scheduler_run(request: Request) -> SchedulerRunResponse:
    _require_cron_secret(request)
    run = reminder_repo.get_latest_run()
    if run is None:
        raise HTTPException(status_code=404, detail="no scheduler runs recorded")
    return _run_response(run)


@router.post("/webhooks/call-status", response_model=WebhookAckResponse)
async def ingest_call_status_webhook(request: Request) -> WebhookAckResponse:
    body = await request.body()
    verification = verify_call_webhook_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        if _settings.call_webhook_signature_mode == "enforce":
            raise HTTPException(status_code=401, detail=f"invalid webhook signature: {verification.reason}")
        logger.warning("call-status webhook signature not verified (%s); accepted in log_only mode", verification.reason)

    try:
        payload = CallStatusWebhookRequest.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"invalid call-status payload: {exc.error_count()} errors") from exc

    try:
        return webhook_service.handle_call_status(payload)
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {payload.reminder_id}") from exc


@router.post("/webhooks/sms-status", response_model=WebhookAckResponse)
async def ingest_sms_status_webhook(request: Request) -> WebhookAckResponse:
    body = await request.body()
    form_data = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    url = _settings.sms_status_callback_url.strip() or str(request.url)
    verification = verify_twilio_status_signature(
        settings=_settings, url=url, form_data=form_data, headers=request.headers
    )
    if not verification.verified:
        if _settings.sms_status_signature_mode == "enforce":
            raise HTTPException(status_code=401, detail=f"invalid twilio signature: {verification.reason}")
        logger.warning("sms-status webhook signature not verified (%s); accepted in log_only mode", verification.reason)

    try:
        return webhook_service.handle_sms_status(form_data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"no reminder for message: {exc.args[0]}") from exc


@router.post("/invoices/{invoice_id}/plan", response_model=list[ReminderItem])
def plan_invoice_reminders(invoice_id: str, request: Request) -> list[ReminderItem]:
    _require_cron_secret(request)
    try:
        created = planner.create_reminders_for_invoice(invoice_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc
    return [_reminder_item(record) for record in created]


@router.get("/{reminder_id}", response_model=ReminderItem)
def get_reminder(reminder_id: str, request: Request) -> ReminderItem:
    _require_cron_secret(request)
    record = reminder_repo.get_reminder(reminder_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}")
    return _reminder_item(record)


@router.post("/{reminder_id}/execute", response_model=ExecutionResponse)
def execute_reminder(reminder_id: str, request: Request) -> ExecutionResponse:
    _require_cron_secret(request)
    try:
        result = executor.execute(reminder_id)
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}") from exc
    return _execution_response(result)
