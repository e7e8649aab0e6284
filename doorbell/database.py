"""
Database Management - File-based gallery, history, settings and door storage

Every store works purely in memory when constructed without a path.
"""
import json
import logging
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import yaml

from doorbell.errors import DimensionMismatch, GalleryWriteFailed, HistoryWriteFailed
from doorbell.models import DetectionEvent, DoorState, Person, Settings, TodaySummary

logger = logging.getLogger(__name__)

HISTORY_FILTERS = ("all", "known", "unknown")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def atomic_write_json(path: Path, data, indent: Optional[int] = None):
    """Write to a temp file, then rename over the target"""
    temp_file = path.with_suffix('.tmp')
    try:
        with open(temp_file, 'w') as f:
            json.dump(data, f, indent=indent)
        temp_file.replace(path)
    except Exception:
        if temp_file.exists():
            temp_file.unlink()
        raise


def remove_files(paths: Sequence[str]):
    for img_path in paths:
        if not img_path:
            continue
        path = Path(img_path)
        if path.exists():
            path.unlink()


def local_day(timestamp: datetime) -> date:
    return timestamp.astimezone().date()


class GalleryStore:
    """Enrolled people and their descriptors"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self.people: Dict[int, Person] = {}
        self.next_id = 1
        self.revision = 0
        self._lock = threading.RLock()
        self.load()

    def load(self):
        """Load gallery from JSON file"""
        with self._lock:
            if self.path and self.path.exists():
                with open(self.path, 'r') as f:
                    data = json.load(f)
                self.people = {}
                for person_data in data.get('people', []):
                    person = Person.model_validate(person_data)
                    self.people[person.person_id] = person
                self.next_id = data.get('next_id', max(self.people, default=0) + 1)
                logger.info("Loaded %d people", len(self.people))
            else:
                self.people = {}
                self.next_id = 1
                logger.info("Created new gallery")
            self.revision += 1

    def save(self):
        if self.path is None:
            return
        data = {
            'next_id': self.next_id,
            'people': [p.model_dump(mode='json') for p in self.list_all()],
        }
        atomic_write_json(self.path, data, indent=2)

    def _commit(self, previous: Dict[int, Person], previous_next_id: int):
        """Persist, or roll back the in-memory change and raise"""
        try:
            self.save()
        except Exception as e:
            self.people = previous
            self.next_id = previous_next_id
            raise GalleryWriteFailed(f"Failed to write gallery: {e}") from e
        self.revision += 1

    def list_all(self) -> List[Person]:
        """All people, ascending person_id"""
        with self._lock:
            return [self.people[pid] for pid in sorted(self.people)]

    def get(self, person_id: int) -> Optional[Person]:
        return self.people.get(person_id)

    def __len__(self) -> int:
        return len(self.people)

    @staticmethod
    def _check_descriptor(descriptor) -> List[float]:
        vector = np.asarray(descriptor, dtype=np.float64)
        if vector.ndim != 1 or vector.size == 0:
            raise ValueError(f"Descriptor must be a non-empty vector, got shape {vector.shape}")
        if not np.all(np.isfinite(vector)):
            raise ValueError("Descriptor contains non-finite values")
        return vector.tolist()

    def dimension(self, exclude: Optional[int] = None) -> Optional[int]:
        """Descriptor length shared by the gallery, None while it is empty"""
        for person_id, person in self.people.items():
            if person_id != exclude:
                return len(person.descriptor)
        return None

    def _check_dimension(self, descriptor: List[float], exclude: Optional[int] = None):
        expected = self.dimension(exclude)
        if expected is not None and len(descriptor) != expected:
            raise DimensionMismatch(f"Descriptor has {len(descriptor)} values, gallery uses {expected}")

    def insert(self, name: str, descriptor, image_paths: Sequence[str] = ()) -> Person:
        descriptor = self._check_descriptor(descriptor)
        with self._lock:
            self._check_dimension(descriptor)
            previous, previous_next_id = dict(self.people), self.next_id
            now = utcnow()
            person = Person(
                person_id=self.next_id,
                name=name,
                descriptor=descriptor,
                image_paths=list(image_paths),
                created_at=now,
                updated_at=now,
            )
            self.people[person.person_id] = person
            self.next_id += 1
            self._commit(previous, previous_next_id)
        logger.info("Stored person %s (%s), %d images", person.person_id, name, len(person.image_paths))
        return person

    def update(self, person_id: int, name: Optional[str] = None, descriptor=None,
               image_paths: Optional[Sequence[str]] = None) -> Optional[Person]:
        """Rename, or replace descriptor and images after re-enrollment"""
        changes = {}
        if name is not None:
            changes['name'] = name
        if descriptor is not None:
            changes['descriptor'] = self._check_descriptor(descriptor)
            changes['image_paths'] = list(image_paths or [])
        elif image_paths is not None:
            raise ValueError("image_paths can only change together with the descriptor")

        with self._lock:
            existing = self.people.get(person_id)
            if existing is None:
                return None
            if 'descriptor' in changes:
                self._check_dimension(changes['descriptor'], exclude=person_id)
            previous = dict(self.people)
            changes['updated_at'] = utcnow()
            person = existing.model_copy(update=changes)
            self.people[person_id] = person
            self._commit(previous, self.next_id)
        return person

    def delete(self, person_id: int) -> Optional[Person]:
        with self._lock:
            person = self.people.get(person_id)
            if person is None:
                return None
            previous = dict(self.people)
            del self.people[person_id]
            self._commit(previous, self.next_id)
        remove_files(person.image_paths)
        logger.info("Deleted person %s (%s)", person_id, person.name)
        return person

    def export(self, filepath: Path):
        """Export gallery to file"""
        data = [p.model_dump(mode='json') for p in self.list_all()]
        atomic_write_json(Path(filepath), {'people': data}, indent=2)

    def import_from(self, filepath: Path) -> int:
        """
        Import people from an export; they get fresh ids. Image paths in the
        file are not trusted, so imported people start without images.
        Nothing is inserted unless every descriptor fits the gallery.
        """
        with open(filepath, 'r') as f:
            imported = json.load(f)
        entries = [
            (person_data['name'], self._check_descriptor(person_data['descriptor']))
            for person_data in imported.get('people', [])
        ]
        with self._lock:
            expected = self.dimension()
            for name, descriptor in entries:
                if expected is None:
                    expected = len(descriptor)
                if len(descriptor) != expected:
                    raise DimensionMismatch(
                        f"{name!r} has {len(descriptor)} descriptor values, expected {expected}"
                    )
            for name, descriptor in entries:
                self.insert(name, descriptor)
        return len(entries)


class HistoryStore:
    """Detection events in capture order"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self.events: List[DetectionEvent] = []
        self.next_id = 1
        self._lock = threading.RLock()
        self.load()

    def load(self):
        with self._lock:
            if self.path and self.path.exists():
                with open(self.path, 'r') as f:
                    data = json.load(f)
                self.events = [DetectionEvent.model_validate(e) for e in data.get('events', [])]
                self.next_id = data.get('next_id', max((e.event_id for e in self.events), default=0) + 1)
                logger.info("Loaded %d history events", len(self.events))
            else:
                self.events = []
                self.next_id = 1

    def save(self):
        if self.path is None:
            return
        data = {
            'next_id': self.next_id,
            'events': [e.model_dump(mode='json') for e in self.events],
        }
        atomic_write_json(self.path, data)

    def _commit(self, previous: List[DetectionEvent], previous_next_id: int):
        try:
            self.save()
        except Exception as e:
            self.events = previous
            self.next_id = previous_next_id
            raise HistoryWriteFailed(f"Failed to write history: {e}") from e

    def append(self, event: DetectionEvent) -> DetectionEvent:
        """Store an event; the store assigns event_id"""
        with self._lock:
            previous, previous_next_id = list(self.events), self.next_id
            stored = event.model_copy(update={'event_id': self.next_id})
            self.events.append(stored)
            self.next_id += 1
            self._commit(previous, previous_next_id)
        return stored

    def __len__(self) -> int:
        return len(self.events)

    def _newest_first(self, events: List[DetectionEvent]) -> List[DetectionEvent]:
        # Stable sort keeps append order for equal timestamps, reversed
        return sorted(events, key=lambda e: (e.captured_at, e.event_id), reverse=True)

    def list_recent(self, n: int = 10) -> List[DetectionEvent]:
        with self._lock:
            return self._newest_first(self.events)[:max(n, 0)]

    def latest(self) -> Optional[DetectionEvent]:
        recent = self.list_recent(1)
        return recent[0] if recent else None

    def get(self, event_id: int) -> Optional[DetectionEvent]:
        for event in self.events:
            if event.event_id == event_id:
                return event
        return None

    def query(self, page: int = 1, limit: int = 9, filter: str = 'all',
              day: Optional[date] = None) -> Tuple[List[DetectionEvent], int]:
        """Filter by known/unknown and local calendar day, newest first, paginated"""
        if filter not in HISTORY_FILTERS:
            raise ValueError(f"filter must be one of {HISTORY_FILTERS}")
        page = max(page, 1)
        limit = max(limit, 1)

        with self._lock:
            events = list(self.events)
        if filter == 'known':
            events = [e for e in events if e.is_known]
        elif filter == 'unknown':
            events = [e for e in events if not e.is_known]
        if day is not None:
            events = [e for e in events if local_day(e.captured_at) == day]

        events = self._newest_first(events)
        start = (page - 1) * limit
        return events[start:start + limit], len(events)

    def today_summary(self, today: Optional[date] = None) -> TodaySummary:
        today = today or datetime.now().astimezone().date()
        with self._lock:
            todays = [e for e in self.events if local_day(e.captured_at) == today]
        known = sum(1 for e in todays if e.is_known)
        return TodaySummary(total=len(todays), known=known, unknown=len(todays) - known)

    def delete_by_id(self, event_id: int) -> bool:
        with self._lock:
            event = self.get(event_id)
            if event is None:
                return False
            previous = list(self.events)
            self.events = [e for e in self.events if e.event_id != event_id]
            self._commit(previous, self.next_id)
        remove_files([event.image_path])
        return True

    def delete_all(self) -> int:
        with self._lock:
            previous = list(self.events)
            self.events = []
            self._commit(previous, self.next_id)
        remove_files([e.image_path for e in previous])
        return len(previous)

    def detach_person(self, person_id: int) -> int:
        """Null out references to a deleted person, keeping the name text"""
        with self._lock:
            previous = list(self.events)
            count = 0
            updated = []
            for event in self.events:
                if event.person_id == person_id:
                    event = event.model_copy(update={'person_id': None})
                    count += 1
                updated.append(event)
            if count:
                self.events = updated
                self._commit(previous, self.next_id)
        return count

    def prune_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """Drop events older than the retention window; 0 keeps everything"""
        if days <= 0:
            return 0
        cutoff = (now or utcnow()) - timedelta(days=days)
        with self._lock:
            previous = list(self.events)
            expired = [e for e in self.events if e.captured_at < cutoff]
            if not expired:
                return 0
            self.events = [e for e in self.events if e.captured_at >= cutoff]
            self._commit(previous, self.next_id)
        remove_files([e.image_path for e in expired])
        logger.info("Pruned %d history events older than %d days", len(expired), days)
        return len(expired)


def deep_merge(base: dict, updates: dict) -> dict:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class SettingsStore:
    """Application settings kept in YAML"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self.settings = self.load()

    def load(self) -> Settings:
        if self.path and self.path.exists():
            with open(self.path, 'r') as f:
                return Settings.model_validate(yaml.safe_load(f) or {})
        return Settings()

    def save(self):
        if self.path is None:
            return
        with open(self.path, 'w') as f:
            yaml.safe_dump(self.settings.model_dump(mode='json'), f, sort_keys=False)

    def get(self) -> Settings:
        return self.settings

    def update(self, partial: dict) -> Settings:
        """Merge a partial settings document; validation errors leave settings untouched"""
        with self._lock:
            merged = deep_merge(self.settings.model_dump(), partial)
            self.settings = Settings.model_validate(merged)
            self.save()
        return self.settings

    def recognition_config(self):
        return self.settings.recognition_config()


class DoorStore:
    """Door lock state, changed only by explicit command"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        if self.path and self.path.exists():
            with open(self.path, 'r') as f:
                self.state = DoorState.model_validate(json.load(f))
        else:
            self.state = DoorState(is_locked=True, last_changed=utcnow())

    def get(self) -> DoorState:
        return self.state

    def set_locked(self, is_locked: bool) -> DoorState:
        with self._lock:
            self.state = DoorState(is_locked=is_locked, last_changed=utcnow())
            if self.path is not None:
                atomic_write_json(self.path, self.state.model_dump(mode='json'))
        logger.info("Door %s", "locked" if is_locked else "unlocked")
        return self.state

    def toggle(self) -> DoorState:
        return self.set_locked(not self.state.is_locked)
