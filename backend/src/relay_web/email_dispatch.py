from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .config import Settings
from .conversations import ConversationService
from .directory import DirectoryRepository
from .email_logs import EmailLogRepository
from .email_sender import EmailSender, EmailSendRequest
from .email_templates import RenderedEmail, milestone_complete_email, task_assigned_email, welcome_email
from .errors import NotConfiguredError, NotFoundError, ProviderError
from .models import (
    EmailSendResponse,
    EmailTestTemplate,
    MilestoneCompleteEmailRequest,
    TaskAssignedEmailRequest,
)
from .sms_sender import mask_contact_target

logger = logging.getLogger(__name__)


class EmailDispatcher:
    """Renders, sends and audits transactional email.

    Every attempt writes exactly one ``email_logs`` row, including attempts where
    the sender raises. Once the attempt is logged, a recipient with a conversation
    also gets an ``Email sent: <subject>`` system message, even when the provider
    reported a failure. A sender that raises leaves the conversation untouched.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        directory: DirectoryRepository,
        conversations: ConversationService,
        email_logs: EmailLogRepository,
        sender: EmailSender,
    ) -> None:
        self._settings = settings
        self._directory = directory
        self._conversations = conversations
        self._email_logs = email_logs
        self._sender = sender

    def send_welcome(self, client_id: str) -> EmailSendResponse:
        client = self._directory.get_client_contact(client_id)
        if client is None:
            raise NotFoundError("Client not found")
        rendered = welcome_email(
            first_name=client.first_name,
            company_name=client.company_name,
            login_url=self._settings.app_url("/login"),
            support_url=self._settings.app_url("/support"),
        )
        return self._deliver(
            to=client.email,
            rendered=rendered,
            email_type="welcome",
            recipient_id=client.client_id,
            metadata={"client_name": client.first_name},
        )

    def send_milestone_complete(self, request: MilestoneCompleteEmailRequest) -> EmailSendResponse:
        client = self._directory.get_client_contact(request.client_id)
        service = self._directory.get_service(request.service_id)
        if client is None or service is None or service.client_id != client.client_id:
            raise NotFoundError("Data not found")
        rendered = milestone_complete_email(
            client_name=client.first_name,
            milestone_name=request.milestone_title,
            service_name=service.name,
            next_steps=request.next_steps,
            dashboard_url=self._settings.app_url("/dashboard"),
        )
        return self._deliver(
            to=client.email,
            rendered=rendered,
            email_type="milestone_complete",
            recipient_id=client.client_id,
            metadata={"milestone_id": request.milestone_id, "service_id": service.service_id},
        )

    def send_task_assigned(self, request: TaskAssignedEmailRequest) -> EmailSendResponse:
        assignee = self._directory.get_profile(request.assignee_id)
        if assignee is None:
            raise NotFoundError("Assignee not found")
        service = self._directory.get_service(request.service_id) if request.service_id else None
        rendered = task_assigned_email(
            assignee_name=assignee.first_name,
            task_title=request.task_title,
            task_description=request.task_description,
            due_date=request.due_date,
            priority=request.priority,
            service_name=service.name if service is not None else None,
            task_url=self._settings.app_url(f"/tasks/{request.task_id}"),
        )
        return self._deliver(
            to=assignee.email,
            rendered=rendered,
            email_type="task_assigned",
            recipient_id=assignee.user_id,
            metadata={"task_id": request.task_id, "milestone_id": request.milestone_id},
        )

    def send_test(self, template: EmailTestTemplate, *, recipient_email: str, caller_id: str) -> EmailSendResponse:
        rendered = self._sample(template)
        return self._deliver(
            to=recipient_email,
            rendered=RenderedEmail(
                subject=f"[TEST] {template} email template",
                html=rendered.html,
                text=rendered.text,
            ),
            email_type=f"test_{template}",
            recipient_id=caller_id,
            metadata={"test": True, "template": template},
        )

    def _sample(self, template: EmailTestTemplate) -> RenderedEmail:
        if template == "welcome":
            return welcome_email(
                first_name="Test User",
                company_name="Test Company",
                login_url=self._settings.app_url("/login"),
                support_url=self._settings.app_url("/support"),
            )
        if template == "milestone":
            return milestone_complete_email(
                client_name="Test User",
                milestone_name="Design Phase Complete",
                service_name="Website Redesign",
                next_steps="Development phase begins next week",
                dashboard_url=self._settings.app_url("/dashboard"),
            )
        return task_assigned_email(
            assignee_name="Test User",
            task_title="Review mockups",
            task_description="Please review the latest mockups and provide feedback",
            due_date=datetime.now(timezone.utc).isoformat(),
            priority="high",
            service_name="Website Redesign",
            task_url=self._settings.app_url("/tasks/test"),
        )

    def _deliver(
        self,
        *,
        to: str,
        rendered: RenderedEmail,
        email_type: str,
        recipient_id: str,
        metadata: dict[str, Any],
    ) -> EmailSendResponse:
        payload = EmailSendRequest(to=to, subject=rendered.subject, html=rendered.html, text=rendered.text)
        try:
            result = self._sender.send(payload)
        except NotConfiguredError as exc:
            logger.error("email provider not configured type=%s", email_type)
            self._email_logs.append(
                recipient_id=recipient_id,
                recipient_email=to,
                type=email_type,
                subject=rendered.subject,
                status="failed",
                error=exc.message,
                metadata=metadata,
            )
            raise
        except Exception as exc:
            logger.exception("email sender raised type=%s to=%s", email_type, mask_contact_target(to, "email"))
            self._email_logs.append(
                recipient_id=recipient_id,
                recipient_email=to,
                type=email_type,
                subject=rendered.subject,
                status="failed",
                error=str(exc) or "Unknown error",
                metadata=metadata,
            )
            raise ProviderError(str(exc) or "Unknown error", error_code="email_sender_error") from exc

        log = self._email_logs.append(
            recipient_id=recipient_id,
            recipient_email=to,
            type=email_type,
            subject=rendered.subject,
            status=result.status,
            error=result.error_message,
            metadata={**metadata, "resend_id": result.provider_message_id},
        )
        self._note_in_conversation(recipient_id, subject=rendered.subject, email_type=email_type, metadata=metadata)
        if result.status != "sent":
            logger.warning(
                "email send failed type=%s to=%s error_code=%s",
                email_type,
                mask_contact_target(to, "email"),
                result.error_code,
            )
            raise ProviderError(result.error_message or "Failed to send email", error_code=result.error_code)

        logger.info("email sent type=%s to=%s log_id=%s", email_type, mask_contact_target(to, "email"), log.log_id)
        return EmailSendResponse(
            success=True,
            status="sent",
            log_id=log.log_id,
            subject=rendered.subject,
            provider_message_id=result.provider_message_id,
        )

    def _note_in_conversation(self, recipient_id: str, *, subject: str, email_type: str, metadata: dict[str, Any]) -> None:
        conversation = self._conversations.find_by_client(recipient_id)
        if conversation is None:
            return
        try:
            self._conversations.append_system_message(
                conversation.conversation_id,
                f"Email sent: {subject}",
                source_type="email",
                metadata={"type": "email_sent", "email_type": email_type, "subject": subject, **metadata},
            )
        except Exception:
            logger.exception("email system message failed conversation_id=%s", conversation.conversation_id)
