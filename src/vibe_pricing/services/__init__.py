"""Services subpackage - rule management."""
from .rules_service import RulesService, ValidationResult

__all__ = ['RulesService', 'ValidationResult']
