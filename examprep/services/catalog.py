"""
Content catalog: the registry of exam sections and their JSON bodies.

Section rows (level, mode, language, order) live in the database; the bodies
are JSON files laid out as ``<root>/<level>/<mode>/<json_id>.json``. Speaking
items may name a shared template from ``<root>/<templates file>``, keyed by
language then template name; template fields act as defaults under the
item's own fields.
"""
import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from examprep.core.cache import ContentCache, get_content_cache
from examprep.core.config import settings
from examprep.core.errors import ConfigurationError
from examprep.models.orm import Section, Level, Mode

logger = logging.getLogger(__name__)


class ContentCatalog:
    def __init__(self, root: str, templates_file: str = "base_templates_oral.json",
                 cache: Optional[ContentCache] = None):
        self.root = root
        self.templates_file = templates_file
        self.cache = cache
        self._templates: Optional[Dict[str, Dict[str, dict]]] = None

    # ---------- registry ----------

    def list_sections(self, db: Session, level: Level, mode: Mode, language: str) -> List[int]:
        """Section ids for (level, mode, language) in stable catalog order.

        Raises ConfigurationError when nothing is seeded for the combination.
        """
        ids = db.scalars(
            select(Section.id)
            .where(Section.level == Level(level).value, Section.mode == Mode(mode).value,
                   Section.language == language.upper())
            .order_by(Section.sequence_index.asc(), Section.id.asc())
        ).all()
        if not ids:
            logger.error(f"No {Level(level).value} {Mode(mode).value} sections available for language {language}")
            raise ConfigurationError(
                f"No {Level(level).value} {Mode(mode).value} sections available for language {language.upper()}")
        return list(ids)

    def get_section(self, db: Session, section_id: Optional[int]) -> Optional[Section]:
        if section_id is None:
            return None
        return db.get(Section, section_id)

    def get_sections(self, db: Session, section_ids: Iterable[int]) -> Dict[int, Section]:
        wanted = {i for i in section_ids if i is not None}
        if not wanted:
            return {}
        return {s.id: s for s in db.scalars(select(Section).where(Section.id.in_(wanted)))}

    # ---------- content ----------

    def _content_path(self, level: Level, mode: Mode, json_id: str) -> str:
        return os.path.join(self.root, Level(level).value.lower(), Mode(mode).value.lower(), f"{json_id}.json")

    def _load_templates(self) -> Dict[str, Dict[str, dict]]:
        if self._templates is None:
            path = os.path.join(self.root, self.templates_file)
            templates: Dict[str, Dict[str, dict]] = {}
            if os.path.exists(path):
                try:
                    with open(path, encoding="utf-8") as fh:
                        raw = json.load(fh)
                    templates = {str(lang).lower(): named for lang, named in raw.items() if isinstance(named, dict)}
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to read speaking templates {path}: {e}")
            else:
                logger.warning(f"Templates file not found: {path}")
            self._templates = templates
        return self._templates

    def apply_templates(self, content: Dict[str, Any], language: str) -> Dict[str, Any]:
        items = content.get("items")
        if not isinstance(items, list):
            return content
        lang = str(content.get("language") or language).lower()
        named = self._load_templates().get(lang, {})
        merged = []
        for item in items:
            template = named.get(item.get("template")) if isinstance(item, dict) and item.get("template") else None
            merged.append({**template, **item} if template else item)
        content["items"] = merged
        return content

    def load_content(self, level: Level, mode: Mode, json_id: str, language: str = "FR") -> Optional[Dict[str, Any]]:
        """Section body with templates applied, or None when the file is absent or unreadable."""
        key = ContentCache.content_key(Level(level).value, Mode(mode).value, json_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        path = self._content_path(level, mode, json_id)
        if not os.path.exists(path):
            logger.warning(f"Section file not found: {path}")
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                content = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load section file for {Level(level).value}/{Mode(mode).value}/{json_id}: {e}")
            return None
        content["id"] = json_id
        if Mode(mode) == Mode.SPEAKING:
            content = self.apply_templates(content, language)
        if self.cache is not None:
            self.cache.set(key, content)
        return content

    def section_payload(self, section: Optional[Section]) -> Dict[str, Any]:
        """Content for a section row, ``{}`` when the row or its body is missing."""
        if section is None:
            return {}
        return self.load_content(Level(section.level), Mode(section.mode), section.json_id, section.language) or {}


@lru_cache()
def get_catalog() -> ContentCatalog:
    return ContentCatalog(settings.SCENARIOS_DIR, settings.TEMPLATES_FILE, get_content_cache())
