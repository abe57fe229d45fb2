from staybook.modules.pricing.calculator import PriceBreakdown, PricingCalculator, compute_price

__all__ = ["PriceBreakdown", "PricingCalculator", "compute_price"]
