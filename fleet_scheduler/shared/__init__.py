"""fleet_scheduler/shared — models and infrastructure shared by every layer."""
