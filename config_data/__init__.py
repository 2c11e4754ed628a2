"""Config data package - ships the versioned disaster rule table."""
import os

RULES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "disaster_rules.json")

__all__ = ['RULES_PATH']
