from models.base import Base, async_session, engine
from models.equipment import Equipment, EquipmentStatus
from models.sensor_reading import SensorReading
from models.alert import Alert, AlertSeverity, AlertStatus

__all__ = [
    "Base",
    "async_session",
    "engine",
    "Equipment",
    "EquipmentStatus",
    "SensorReading",
    "Alert",
    "AlertSeverity",
    "AlertStatus",
]
