"""BlindsBook receptionist service: HTTP shell, clients, models and storage."""
