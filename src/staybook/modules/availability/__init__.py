from staybook.modules.availability.checker import AvailabilityChecker, ranges_overlap

__all__ = ["AvailabilityChecker", "ranges_overlap"]
