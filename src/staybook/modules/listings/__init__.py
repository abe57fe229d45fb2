from staybook.modules.listings.cascade import CascadeCanceller, ListingService

__all__ = ["CascadeCanceller", "ListingService"]
