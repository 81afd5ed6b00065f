"""Conversion stages, in the order `TextureConverter` runs them."""
