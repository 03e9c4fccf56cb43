"""InspectOS DB — SQLAlchemy models, engine registry and sessions."""
