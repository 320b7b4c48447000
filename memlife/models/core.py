"""
Core data models for the memory lifecycle engine.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import utc_now


class MemoryType(str, Enum):
    """Kind of knowledge a memory holds."""
    FACT = 'FACT'
    PREFERENCE = 'PREFERENCE'
    DECISION = 'DECISION'
    SUMMARY = 'SUMMARY'
    FEEDBACK = 'FEEDBACK'


class EntityType(str, Enum):
    """Kind of entity tracked for a user."""
    SCHOOL = 'SCHOOL'
    PERSON = 'PERSON'
    EVENT = 'EVENT'
    TOPIC = 'TOPIC'


class MemoryTier(str, Enum):
    """Coarse storage/priority class derived from a memory's score."""
    WORKING = 'WORKING'
    SHORT = 'SHORT'
    LONG = 'LONG'
    ARCHIVE = 'ARCHIVE'


class ConflictStrategy(str, Enum):
    """Policy applied when a new memory collides with an existing one."""
    KEEP_LATEST = 'KEEP_LATEST'
    KEEP_HIGHEST = 'KEEP_HIGHEST'
    KEEP_OLDEST = 'KEEP_OLDEST'
    MERGE = 'MERGE'
    KEEP_BOTH = 'KEEP_BOTH'
    ASK_USER = 'ASK_USER'


class ResolutionAction(str, Enum):
    """Outcome of conflict resolution."""
    CREATE = 'CREATE'
    UPDATE = 'UPDATE'
    SKIP = 'SKIP'
    MERGE = 'MERGE'
    PENDING = 'PENDING'


def clamp01(value: float) -> float:
    """Clamp a number into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


@dataclass
class Memory:
    """A scored, typed unit of extracted knowledge about a user."""
    id: str
    user_id: str
    type: MemoryType
    content: str
    importance: float
    category: Optional[str] = None
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    embedding: List[float] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    similarity: Optional[float] = None  # Only set on search results
    seq_no: Optional[int] = None  # Store version, used for optimistic concurrency
    primary_term: Optional[int] = None

    def __post_init__(self):
        self.type = MemoryType(self.type)
        self.importance = clamp01(self.importance)


@dataclass
class MemoryInput:
    """A candidate memory before it is persisted.

    Confidence is carried through the pipeline for scoring but is not a stored field.
    """
    type: MemoryType
    content: str
    category: Optional[str] = None
    importance: Optional[float] = None
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    id: Optional[str] = None  # Set when a resolution targets an existing memory

    def __post_init__(self):
        self.type = MemoryType(self.type)
        if self.importance is not None:
            self.importance = clamp01(self.importance)
        if self.confidence is not None:
            self.confidence = clamp01(self.confidence)


@dataclass
class EntityRelation:
    """Typed link from one entity to another entity by name."""
    target_name: str
    relation: str = 'related_to'
    target_type: Optional[EntityType] = None


@dataclass
class Entity:
    """Represents an entity extracted from user conversations.

    Entities are unique per (user_id, type, name).
    """
    user_id: str
    type: EntityType
    name: str
    description: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    relations: List[EntityRelation] = field(default_factory=list)
    id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    similarity: Optional[float] = None

    def __post_init__(self):
        self.type = EntityType(self.type)


@dataclass
class ExtractedMemory:
    """Candidate memory produced by the extraction engine."""
    type: MemoryType
    content: str
    importance: float
    confidence: float
    source: str  # 'rule' or 'llm'
    category: Optional[str] = None
    rule_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    conflict_strategy: Optional[ConflictStrategy] = None
    ttl_days: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedEntity:
    """Candidate entity produced by the extraction engine."""
    type: EntityType
    name: str
    source: str
    description: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    relations: List[str] = field(default_factory=list)


@dataclass
class ExtractionStats:
    rule_matches: int = 0
    llm_extractions: int = 0
    duplicates_removed: int = 0
    validation_failed: int = 0
    total_time_ms: int = 0


@dataclass
class ExtractionResult:
    memories: List[ExtractedMemory]
    entities: List[ExtractedEntity]
    stats: ExtractionStats


@dataclass
class ValidationResult:
    """Validator outcome: a normalized value or a rejection reason."""
    valid: bool
    normalized: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoreInput:
    type: MemoryType
    content: str
    importance: float
    confidence: float
    created_at: datetime
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoreResult:
    """Composite score of a memory. Computed on demand, persisted only as a metadata snapshot."""
    total: float
    importance: float
    freshness: float
    confidence: float
    access_bonus: float
    tier: MemoryTier
    should_decay: bool
    should_archive: bool

    @property
    def components(self) -> Dict[str, float]:
        return {
            'importance': self.importance,
            'freshness': self.freshness,
            'confidence': self.confidence,
            'access_bonus': self.access_bonus
        }


@dataclass
class ConflictDetection:
    """Result of checking a candidate memory against stored memories."""
    has_conflict: bool
    suggested_strategy: ConflictStrategy
    existing: Optional[Memory] = None
    conflict_type: Optional[str] = None  # 'key', 'exact' or 'semantic'
    similarity: Optional[float] = None
    dedupe_key: Optional[str] = None


@dataclass
class ConflictResolution:
    action: ResolutionAction
    memory: MemoryInput
    reason: str
    merged_from: List[str] = field(default_factory=list)
    requires_confirmation: bool = False


@dataclass
class DecayResult:
    processed: int = 0
    decayed: int = 0
    archived: int = 0
    deleted: int = 0
    boosted: int = 0
    errors: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class DecayStats:
    total_memories: int
    by_tier: Dict[str, int]
    average_importance: float
    average_freshness: float
    scheduled_for_archive: int
    scheduled_for_delete: int


@dataclass
class CompactionResult:
    user_id: str
    processed: int = 0
    merged: int = 0
    summarized: int = 0
    deleted: int = 0
    tokens_saved: int = 0
    errors: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MemoryStats:
    total_memories: int
    total_conversations: int
    total_messages: int
    total_entities: int
    memory_by_type: Dict[str, int]
    conversations_last_7_days: int
    messages_last_7_days: int
    decay: Optional[DecayStats] = None
    scoring: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RecallOptions:
    query: Optional[str] = None
    use_semantic_search: bool = True
    types: Optional[List[MemoryType]] = None
    categories: Optional[List[str]] = None
    min_importance: Optional[float] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: int = 10
    min_similarity: float = 0.5


@dataclass
class Message:
    """A chat message in a conversation."""
    id: str
    user_id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class UserPreferences:
    communication_style: str = 'friendly'
    response_length: str = 'moderate'
    language: str = 'zh-CN'
    enable_memory: bool = True
    enable_suggestions: bool = True
    school_preferences: Dict[str, Any] = field(default_factory=dict)
    essay_preferences: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationSummary:
    summary: str
    key_topics: List[str] = field(default_factory=list)
    decisions: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    facts: List[MemoryInput] = field(default_factory=list)
    entities: List[ExtractedEntity] = field(default_factory=list)


@dataclass
class RetrievalContext:
    """Bundle of context handed to the agent for one turn."""
    recent_messages: List[Message]
    relevant_memories: List[Memory]
    preferences: UserPreferences
    entities: List[Entity]
    conversation_id: Optional[str] = None

    @property
    def meta(self) -> Dict[str, Any]:
        return {
            'conversation_id': self.conversation_id,
            'message_count': len(self.recent_messages),
            'memory_count': len(self.relevant_memories)
        }
