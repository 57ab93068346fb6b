"""Promo codes and discounts."""
