"""Tests for ``gradsketch``."""
