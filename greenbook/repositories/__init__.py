from greenbook.repositories.toggle_repository import ToggleRecordRepository

__all__ = ["ToggleRecordRepository"]
