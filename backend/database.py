from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from backend.core import config


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith('sqlite'):
        # Request handlers and booking threads share pooled connections.
        connect_args['check_same_thread'] = False
    return create_engine(database_url, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_scheduling_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_scheduling_schema(bind: Engine | None = None) -> None:
    """Bring databases created by the direct-booking release up to the request workflow."""
    global _scheduling_schema_checked

    if _scheduling_schema_checked:
        return

    with _schema_lock:
        if _scheduling_schema_checked:
            return

        target = bind or engine
        inspector = inspect(target)
        table_names = set(inspector.get_table_names())

        if 'checkout_appointments' not in table_names:
            _scheduling_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('checkout_appointments')}
        migration_steps = [
            ('reviewed_by', 'ALTER TABLE checkout_appointments ADD COLUMN reviewed_by INTEGER'),
            ('reviewed_at', 'ALTER TABLE checkout_appointments ADD COLUMN reviewed_at TIMESTAMP'),
            ('decision_reason', 'ALTER TABLE checkout_appointments ADD COLUMN decision_reason VARCHAR'),
            ('result', 'ALTER TABLE checkout_appointments ADD COLUMN result VARCHAR'),
            ('result_notes', 'ALTER TABLE checkout_appointments ADD COLUMN result_notes VARCHAR'),
            ('resulted_by', 'ALTER TABLE checkout_appointments ADD COLUMN resulted_by INTEGER'),
            ('resulted_at', 'ALTER TABLE checkout_appointments ADD COLUMN resulted_at TIMESTAMP'),
            ('cancellation_reason', 'ALTER TABLE checkout_appointments ADD COLUMN cancellation_reason VARCHAR'),
        ]

        with target.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text("UPDATE checkout_appointments SET status = 'accepted' WHERE status = 'scheduled'")
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS checkout_appt_status_start_idx ON checkout_appointments(status, start_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS checkout_appt_manager_start_idx ON checkout_appointments(manager_id, start_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS checkout_appt_machine_start_idx ON checkout_appointments(machine_id, start_time)')
            )
            if 'checkout_appointment_events' in table_names:
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS checkout_appt_event_appt_created_idx '
                        'ON checkout_appointment_events(appointment_id, created_at)'
                    )
                )
            if 'checkout_availability_rules' in table_names:
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS checkout_rule_manager_day_idx '
                        'ON checkout_availability_rules(manager_id, day_of_week, active)'
                    )
                )

        _scheduling_schema_checked = True
