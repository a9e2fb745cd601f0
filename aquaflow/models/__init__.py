from aquaflow.models.models import (  # noqa: F401
    Base, User, Site, Household, WaterLevel, Maintenance, Alert, AlertNotification
)
