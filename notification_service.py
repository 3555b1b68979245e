"""notification_service.py

Notification queue on top of the EmailHistory table.

Every outgoing email is first written as a `pending` EmailHistory row
(the auditable unit), then delivered by `dispatch`. Delivery outcome is
recorded on the same row: `sent` + message_id, or `failed` + last_error.
`dispatch_pending` is run by the scheduler to retry rows that have not
reached NOTIFICATION_MAX_ATTEMPTS.

Business workflows call `notify` after their own transaction has committed;
`notify` never raises, so a broken mail setup cannot fail a borrow or a scan.
"""

import logging
from datetime import datetime

from email_service import render_email, send_email
from models import EmailHistory, transaction

logger = logging.getLogger(__name__)


class NotificationDispatcher:

    def __init__(self, db, inline=False, max_attempts=3, clock=datetime.now):
        self.db = db
        self.inline = inline
        self.max_attempts = max_attempts
        self.clock = clock

    def _create_entry(self, email_type, recipient, payload, sent_by=None):
        # Render once up front so a malformed payload is rejected before it is queued
        subject, _ = render_email(email_type, payload)
        entry = EmailHistory(
            recipient_email=recipient,
            email_type=email_type,
            subject=subject[:200],
            status='pending',
            sent_by=sent_by,
            payload=payload,
            attempts=0,
            created_at=self.clock(),
        )
        with transaction(self.db.session) as session:
            session.add(entry)
        return entry

    def enqueue(self, email_type, recipient, payload, sent_by=None):
        """Queue an email; delivered immediately when NOTIFICATION_INLINE is set."""
        entry = self._create_entry(email_type, recipient, payload, sent_by)
        logger.debug('Queued %s email #%s for %s', email_type, entry.id, recipient)
        if self.inline:
            self.dispatch(entry)
        return entry

    def notify(self, email_type, recipient, payload, sent_by=None):
        """Best-effort enqueue used after a committed workflow. Returns the entry or None."""
        if not recipient:
            logger.warning('Skipping %s email: no recipient address', email_type)
            return None
        try:
            return self.enqueue(email_type, recipient, payload, sent_by)
        except Exception:
            logger.exception('Could not queue %s email for %s', email_type, recipient)
            return None

    def dispatch(self, entry):
        """Render and send one queued entry, recording the outcome. Never raises."""
        entry.attempts = (entry.attempts or 0) + 1
        try:
            subject, html = render_email(entry.email_type, entry.payload or {})
            message_id = send_email(entry.recipient_email, subject, html)
        except Exception as e:
            entry.status = 'failed'
            entry.last_error = str(e)[:1000]
            logger.warning('Failed to send %s email #%s to %s (attempt %s): %s',
                           entry.email_type, entry.id, entry.recipient_email, entry.attempts, e)
        else:
            entry.status = 'sent'
            entry.message_id = message_id
            entry.sent_at = self.clock()
            entry.last_error = None
            logger.info('Sent %s email #%s to %s', entry.email_type, entry.id, entry.recipient_email)

        try:
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            logger.exception('Could not record delivery outcome for email #%s', entry.id)
        return entry

    def send_now(self, email_type, recipient, payload, sent_by=None):
        """Queue and deliver synchronously (manual /email triggers)."""
        entry = self._create_entry(email_type, recipient, payload, sent_by)
        return self.dispatch(entry)

    def dispatch_pending(self, batch_size=100):
        """Deliver pending rows and retry failed ones below the attempt limit."""
        entries = (
            EmailHistory.query
            .filter(
                EmailHistory.status.in_(('pending', 'failed')),
                EmailHistory.attempts < self.max_attempts
            )
            .order_by(EmailHistory.created_at, EmailHistory.id)
            .limit(batch_size)
            .all()
        )
        sent = 0
        for entry in entries:
            if self.dispatch(entry).status == 'sent':
                sent += 1
        result = {'processed': len(entries), 'sent': sent, 'failed': len(entries) - sent}
        if entries:
            logger.info('Dispatched queued emails: %s', result)
        return result
