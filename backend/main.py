import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from backend.core import config
from backend.core.logging_config import configure_logging
from backend.database import Base, engine, ensure_scheduling_schema
from backend.models import appointment, availability, checkout, machine, notification, reservation, user  # noqa: F401
from backend.routes import appointment_routes, availability_routes, checkout_routes, reservation_routes

configure_logging()
config.validate_runtime_config()

app = FastAPI(title='Makerspace Scheduling API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_scheduling_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Makerspace Scheduling API Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(reservation_routes.router, prefix='/reservations')
app.include_router(checkout_routes.router, prefix='/checkouts')
