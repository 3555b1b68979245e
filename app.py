"""app.py

Application factory for the attendance + library REST API.

create_app(overrides=None, clock=None):
 - loads configuration (config.configure_app) and logging
 - binds Flask-SQLAlchemy and Flask-Mail, registers the JSON error handlers
 - builds the service objects and stores them in `app.extensions`
   (notifier, scan, library, reports) so routes never construct their own
 - registers the blueprints with their url prefixes
 - starts Flask-APScheduler when SCHEDULER_ENABLED

Scheduled jobs (timezone SCHEDULER_TIMEZONE):
 - daily_summary     18:00 every day
 - weekly_summary    18:00 on Sunday
 - return_reminders  08:00 every day (due tomorrow + overdue)
 - expire_reservations  hourly
 - dispatch_notifications  every minute (pending + retryable failed emails)
"""

import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler

from flask import Flask
from flask_apscheduler import APScheduler

from config import configure_app
from email_service import mail
from errors import register_error_handlers
from library_service import LibraryService
from models import db
from notification_service import NotificationDispatcher
from report_service import ReportService
from scan_service import ScanService

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(app):
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    app.logger.setLevel(level)

    log_file = app.config.get('LOG_FILE')
    if log_file:
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def init_services(app, clock):
    notifier = NotificationDispatcher(
        db,
        inline=app.config['NOTIFICATION_INLINE'],
        max_attempts=app.config['NOTIFICATION_MAX_ATTEMPTS'],
        clock=clock
    )
    app.extensions['notifier'] = notifier
    app.extensions['scan'] = ScanService(db, notifier, clock=clock)
    app.extensions['library'] = LibraryService(db, notifier, clock=clock)
    app.extensions['reports'] = ReportService(db, notifier, clock=clock)


def register_blueprints(app):
    from routes.main import main as main_blueprint
    from routes.auth import auth as auth_blueprint
    from routes.scan import scan as scan_blueprint
    from routes.student import student as student_blueprint
    from routes.subject import subject as subject_blueprint
    from routes.enrollment import enrollment as enrollment_blueprint
    from routes.library import library as library_blueprint
    from routes.email import email as email_blueprint
    from routes.email_management import email_management as email_management_blueprint

    app.register_blueprint(main_blueprint, name='main_bp')
    app.register_blueprint(auth_blueprint, name='auth_bp', url_prefix='/auth')
    app.register_blueprint(scan_blueprint, name='scan_bp', url_prefix='/scan')
    app.register_blueprint(student_blueprint, name='student_bp', url_prefix='/students')
    app.register_blueprint(subject_blueprint, name='subject_bp', url_prefix='/subjects')
    app.register_blueprint(enrollment_blueprint, name='enrollment_bp', url_prefix='/enrollments')
    app.register_blueprint(library_blueprint, name='library_bp', url_prefix='/library')
    app.register_blueprint(email_blueprint, name='email_bp', url_prefix='/email')
    app.register_blueprint(email_management_blueprint, name='email_management_bp',
                           url_prefix='/email-management')


# ------------------------------------------------------------------ jobs

def job_daily_summary(app):
    return app.extensions['reports'].broadcast_daily_summary()


def job_weekly_summary(app):
    return app.extensions['reports'].broadcast_weekly_summary()


def job_return_reminders(app):
    return app.extensions['library'].send_return_reminders()


def job_expire_reservations(app):
    return app.extensions['library'].expire_reservations()


def job_dispatch_notifications(app):
    return app.extensions['notifier'].dispatch_pending()


JOBS = {
    'daily_summary': (job_daily_summary, {'trigger': 'cron', 'hour': 18, 'minute': 0}),
    'weekly_summary': (job_weekly_summary, {'trigger': 'cron', 'day_of_week': 'sun', 'hour': 18, 'minute': 0}),
    'return_reminders': (job_return_reminders, {'trigger': 'cron', 'hour': 8, 'minute': 0}),
    'expire_reservations': (job_expire_reservations, {'trigger': 'interval', 'hours': 1}),
    'dispatch_notifications': (job_dispatch_notifications, {'trigger': 'interval', 'minutes': 1}),
}


def run_job(app, name):
    """Run one scheduled job inside an app context. Failures are logged, never raised."""
    func = JOBS[name][0]
    with app.app_context():
        try:
            result = func(app)
        except Exception:
            db.session.rollback()
            app.logger.exception('Scheduled job %s failed', name)
            return None
        app.logger.info('Scheduled job %s finished: %s', name, result)
        return result


def init_scheduler(app):
    scheduler = APScheduler()
    scheduler.init_app(app)
    for name, (_, trigger) in JOBS.items():
        scheduler.add_job(id=name, func=run_job, args=[app, name], replace_existing=True, **trigger)
    scheduler.start()
    app.extensions['scheduler'] = scheduler
    app.logger.info('Scheduler started with jobs: %s', ', '.join(JOBS))
    return scheduler


def create_app(overrides=None, clock=None):
    app = Flask(__name__)
    configure_app(app, overrides)
    configure_logging(app)

    db.init_app(app)
    mail.init_app(app)
    register_error_handlers(app)
    init_services(app, clock or datetime.now)
    register_blueprints(app)

    if app.config['SCHEDULER_ENABLED']:
        init_scheduler(app)

    return app


if __name__ == '__main__':
    import sys

    app = create_app()
    with app.app_context():
        db.create_all()

    # Prefer PORT from environment. Fallback to CLI arg or 8000
    port = int(os.environ.get('PORT') or (int(sys.argv[1]) if len(sys.argv) > 1 else 8000))
    debug_mode = os.environ.get('FLASK_DEBUG', '0') in ('1', 'true', 'True')
    app.logger.info('Starting server on port %s', port)
    # The reloader would start a second scheduler in the child process
    app.run(debug=debug_mode, port=port, host='0.0.0.0', use_reloader=False)
