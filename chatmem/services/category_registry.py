"""
Category registry: pre-known core categories plus dynamically minted ones.
"""

import threading
from enum import Enum
from typing import Dict, List, Optional

from ..models.core import CategoryInfo
from ..utils.logging_config import get_logger
from ..utils.validation import normalize_category

logger = get_logger(__name__)

__all__ = ['CoreCategory', 'CategoryRegistry', 'normalize_category']


class CoreCategory(str, Enum):
    """Categories every deployment knows about."""
    PERSONAL_INFO = 'personal_info'
    WORK_CONTEXT = 'work_context'
    DEVICE_INFO = 'device_info'
    SKILLS = 'skills'
    EDUCATION = 'education'
    CONTACT_INFO = 'contact_info'
    PREFERENCES = 'preferences'
    INTERESTS = 'interests'
    RELATIONSHIPS = 'relationships'
    GOALS = 'goals'
    PROJECTS = 'projects'
    LIFESTYLE = 'lifestyle'
    OPINIONS = 'opinions'
    EXPERIENCES = 'experiences'
    FACTS = 'facts'
    OTHER = 'other'


CORE_CATEGORY_NAMES = frozenset(category.value for category in CoreCategory)

CORE_DESCRIPTIONS = {
    CoreCategory.PERSONAL_INFO: ('Personal Info', 'Name, age, location, identity'),
    CoreCategory.WORK_CONTEXT: ('Work', 'Job, employer, role, responsibilities'),
    CoreCategory.DEVICE_INFO: ('Devices', 'Computers, phones and their configuration'),
    CoreCategory.SKILLS: ('Skills', 'Abilities and technical expertise'),
    CoreCategory.EDUCATION: ('Education', 'Schools, degrees, courses'),
    CoreCategory.CONTACT_INFO: ('Contact', 'Email, phone, addresses'),
    CoreCategory.PREFERENCES: ('Preferences', 'Likes, dislikes and habits of choice'),
    CoreCategory.INTERESTS: ('Interests', 'Hobbies and topics of interest'),
    CoreCategory.RELATIONSHIPS: ('Relationships', 'Family, partners, friends, colleagues'),
    CoreCategory.GOALS: ('Goals', 'Plans and aspirations'),
    CoreCategory.PROJECTS: ('Projects', 'Ongoing or past projects'),
    CoreCategory.LIFESTYLE: ('Lifestyle', 'Health, exercise, daily routine'),
    CoreCategory.OPINIONS: ('Opinions', 'Views and beliefs'),
    CoreCategory.EXPERIENCES: ('Experiences', 'Events the user went through'),
    CoreCategory.FACTS: ('Facts', 'Other factual statements'),
    CoreCategory.OTHER: ('Other', 'Anything that fits nowhere else'),
}

# Offered to the LLM as examples of categories it may mint
DYNAMIC_CATEGORY_EXAMPLES = [
    'health_medical',
    'cooking_food',
    'travel_location',
    'finance_money',
    'pets_animals',
    'sports_fitness',
    'entertainment_media',
    'technology_tools',
]


class CategoryRegistry:
    """Tracks known categories and how often each one is used."""

    def __init__(self):
        self._lock = threading.Lock()
        self._categories: Dict[str, CategoryInfo] = {}
        for category, (display_name, description) in CORE_DESCRIPTIONS.items():
            self._categories[category.value] = CategoryInfo(name=category.value,
                                                            display_name=display_name,
                                                            description=description,
                                                            is_core=True)

    @staticmethod
    def is_core(category: str) -> bool:
        return normalize_category(category) in CORE_CATEGORY_NAMES

    def register(self, category: str, description: Optional[str] = None) -> str:
        """Normalize a category, creating a registry entry on first use.

        Args:
            category: Raw category string
            description: Optional description for a new category

        Returns:
            Normalized category name
        """
        name = normalize_category(category)
        with self._lock:
            info = self._categories.get(name)
            if info is None:
                info = CategoryInfo(name=name,
                                    display_name=self._default_display_name(name),
                                    description=description or '',
                                    is_core=False)
                self._categories[name] = info
                logger.info(f'Registered new category: {name}')
            info.usage_count += 1
        return name

    def get(self, category: str) -> Optional[CategoryInfo]:
        return self._categories.get(normalize_category(category))

    def contains(self, category: str) -> bool:
        return normalize_category(category) in self._categories

    def all(self) -> List[CategoryInfo]:
        """Core categories first, then custom ones by usage."""
        with self._lock:
            infos = list(self._categories.values())
        core = [info for info in infos if info.is_core]
        custom = sorted((info for info in infos if not info.is_core), key=lambda info: info.usage_count, reverse=True)
        return core + custom

    def suggestions(self, limit: int = 10) -> List[str]:
        """Category names to suggest in the extraction prompt."""
        names = [category.value for category in CoreCategory]
        custom = [info.name for info in self.all() if not info.is_core][:limit]
        for name in custom + DYNAMIC_CATEGORY_EXAMPLES:
            if name not in names:
                names.append(name)
        return names

    @staticmethod
    def _default_display_name(name: str) -> str:
        return name.replace('_', ' ').title()
