"""Rule-driven classification of chunks into purpose, tags and complexity."""

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from cntx.observability.logging import get_logger
from cntx.vector.exceptions import RuleTableError
from cntx.vector.models import CandidateChunk, Complexity, ComplexityLevel

logger = get_logger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "default_rules.json"

BOOLEAN_FIELDS = {"exported", "async"}

BRANCH_PATTERN = re.compile(r"\b(?:if|elif|case|catch|except|match)\b|&&|\|\||(?<![?])\?(?![.?:])")
LOOP_PATTERN = re.compile(r"\b(?:for|while|do|loop)\b")
STRING_OR_COMMENT = re.compile(
    r"//[^\n]*|#[^\n]*|/\*.*?\*/|\"(?:\\.|[^\"\\\n])*\"|'(?:\\.|[^'\\\n])*'|`(?:\\.|[^`\\])*`",
    re.DOTALL,
)


@lru_cache(maxsize=512)
def _compile(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE)


class Condition(BaseModel):
    """A single test against one chunk attribute."""
    field: Literal["name", "path", "subtype", "code", "imports", "exported", "async"]
    op: Literal["equals", "startswith", "endswith", "contains", "matches"] = "contains"
    value: Union[bool, str]

    @model_validator(mode="after")
    def check_value(self):
        if self.field in BOOLEAN_FIELDS:
            if self.op != "equals" or not isinstance(self.value, bool):
                raise ValueError(f"Field '{self.field}' only supports equals with a boolean value")
        elif not isinstance(self.value, str):
            raise ValueError(f"Field '{self.field}' needs a string value")
        elif self.op == "matches":
            try:
                _compile(self.value)
            except re.error as e:
                raise ValueError(f"Invalid regex {self.value!r}: {e}") from e
        return self

    def evaluate(self, attributes: Dict[str, Any]) -> bool:
        actual = attributes[self.field]
        if self.field in BOOLEAN_FIELDS:
            return bool(actual) == self.value

        text = str(actual)
        expected = str(self.value)
        if self.op == "matches":
            return _compile(expected).search(text) is not None

        text = text.lower()
        expected = expected.lower()
        if self.op == "equals":
            return text == expected
        if self.op == "startswith":
            return text.startswith(expected)
        if self.op == "endswith":
            return text.endswith(expected)
        return expected in text


class _Rule(BaseModel):
    match: Literal["all", "any"] = "all"
    conditions: List[Condition] = Field(default_factory=list)

    def applies(self, attributes: Dict[str, Any]) -> bool:
        if not self.conditions:
            return False
        results = (condition.evaluate(attributes) for condition in self.conditions)
        return all(results) if self.match == "all" else any(results)


class PurposeRule(_Rule):
    name: str
    purpose: str
    confidence: float = 0.5


class TagRule(_Rule):
    tag: str


class BundleRule(_Rule):
    bundle: str


class Vocabulary(BaseModel):
    domains: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)


class ComplexityWeights(BaseModel):
    branch_weight: float = 1.0
    loop_weight: float = 1.5
    nesting_weight: float = 1.0
    length_weight: float = 1.0
    length_unit: int = 400
    medium_threshold: int = 5
    high_threshold: int = 15

    @model_validator(mode="after")
    def check_thresholds(self):
        if self.length_unit <= 0:
            raise ValueError("length_unit must be positive")
        if self.medium_threshold > self.high_threshold:
            raise ValueError("medium_threshold must not exceed high_threshold")
        return self


class RuleTable(BaseModel):
    """Classification rules, loaded from JSON configuration."""
    version: str = "1.0.0"
    vocabulary: Vocabulary = Field(default_factory=Vocabulary)
    fallback_purpose: Optional[str] = None
    purpose_rules: List[PurposeRule] = Field(default_factory=list)
    domain_rules: List[TagRule] = Field(default_factory=list)
    pattern_rules: List[TagRule] = Field(default_factory=list)
    bundle_rules: List[BundleRule] = Field(default_factory=list)
    complexity: ComplexityWeights = Field(default_factory=ComplexityWeights)

    @field_validator("fallback_purpose")
    @classmethod
    def blank_fallback_is_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def check_vocabulary(self):
        domains = set(self.vocabulary.domains)
        patterns = set(self.vocabulary.patterns)

        unknown_domains = sorted({rule.tag for rule in self.domain_rules} - domains)
        if unknown_domains:
            raise ValueError(f"Domain tags not declared in vocabulary: {', '.join(unknown_domains)}")

        unknown_patterns = sorted({rule.tag for rule in self.pattern_rules} - patterns)
        if unknown_patterns:
            raise ValueError(f"Pattern tags not declared in vocabulary: {', '.join(unknown_patterns)}")

        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleTable":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise RuleTableError(f"Invalid rule table: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path]) -> "RuleTable":
        """Load a rule table from a JSON file.

        Raises:
            RuleTableError: If the file is missing, not JSON or fails validation
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RuleTableError(f"Cannot read rule table {path}: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "RuleTable":
        return cls.load(DEFAULT_RULES_PATH)


@dataclass(frozen=True)
class Classification:
    purpose: str
    domain_tags: FrozenSet[str]
    pattern_tags: FrozenSet[str]
    complexity: Complexity


def _strip_literals(code: str) -> str:
    return STRING_OR_COMMENT.sub(" ", code)


def _max_nesting(code: str, language: str) -> int:
    """Depth of the deepest block inside the chunk's own body."""
    if language == "python":
        indents = []
        for line in code.split("\n"):
            stripped = line.lstrip()
            if stripped and not stripped.startswith("#"):
                indents.append(len(line.expandtabs(4)) - len(stripped))
        if len(indents) < 2:
            return 0
        base = indents[0]
        steps = sorted({i - base for i in indents if i > base})
        if not steps:
            return 0
        unit = steps[0]
        return max(0, steps[-1] // unit - 1)

    depth = 0
    deepest = 0
    for char in code:
        if char == "{":
            depth += 1
            deepest = max(deepest, depth)
        elif char == "}":
            depth = max(0, depth - 1)
    return max(0, deepest - 1)


class HeuristicClassifier:
    """Classify candidate chunks with a ``RuleTable``.

    ``classify`` is a pure function of the chunk and the current table and
    never raises: chunks no rule matches get the fallback purpose and no tags.
    """

    def __init__(self, rules: Optional[RuleTable] = None, rules_path: Optional[Union[str, Path]] = None):
        self.rules_path = Path(rules_path) if rules_path else None
        self._mtime: Optional[float] = None

        if rules is not None:
            self.rules = rules
        elif self.rules_path is not None:
            self.rules = RuleTable.load(self.rules_path)
            self._mtime = self._current_mtime()
        else:
            self.rules = RuleTable.default()

    def _current_mtime(self) -> Optional[float]:
        try:
            return self.rules_path.stat().st_mtime
        except OSError:
            return None

    def reload_if_changed(self) -> bool:
        """Re-read the rule file when its modification time changed.

        An invalid new table is logged and the previous table stays active.

        Returns:
            True if a new table was loaded
        """
        if self.rules_path is None:
            return False

        mtime = self._current_mtime()
        if mtime is None or mtime == self._mtime:
            return False

        try:
            self.rules = RuleTable.load(self.rules_path)
        except RuleTableError as e:
            logger.error("Rule table reload failed, keeping previous rules", path=str(self.rules_path), error=str(e))
            self._mtime = mtime
            return False

        self._mtime = mtime
        logger.info("Rule table reloaded", path=str(self.rules_path), version=self.rules.version)
        return True

    def classify(self, chunk: CandidateChunk) -> Classification:
        attributes = {
            "name": chunk.name,
            "path": chunk.file_path,
            "subtype": chunk.subtype.value,
            "code": chunk.source_text,
            "imports": "\n".join(chunk.includes),
            "exported": chunk.is_exported,
            "async": chunk.is_async,
        }

        purpose = self.rules.fallback_purpose or "unknown"
        for rule in self.rules.purpose_rules:
            if rule.applies(attributes):
                purpose = rule.purpose
                break

        domain_tags = frozenset(rule.tag for rule in self.rules.domain_rules if rule.applies(attributes))
        pattern_tags = frozenset(rule.tag for rule in self.rules.pattern_rules if rule.applies(attributes))

        return Classification(
            purpose=purpose,
            domain_tags=domain_tags,
            pattern_tags=pattern_tags,
            complexity=self.score_complexity(chunk.source_text, chunk.language),
        )

    def score_complexity(self, code: str, language: str = "text") -> Complexity:
        weights = self.rules.complexity
        stripped = _strip_literals(code)

        branches = len(BRANCH_PATTERN.findall(stripped))
        loops = len(LOOP_PATTERN.findall(stripped))
        nesting = _max_nesting(stripped, language)

        score = round(
            weights.branch_weight * branches
            + weights.loop_weight * loops
            + weights.nesting_weight * nesting
            + weights.length_weight * (len(code) / weights.length_unit)
        )
        return Complexity(score=score, level=self.complexity_level(score))

    def complexity_level(self, score: int) -> ComplexityLevel:
        weights = self.rules.complexity
        if score >= weights.high_threshold:
            return ComplexityLevel.HIGH
        if score >= weights.medium_threshold:
            return ComplexityLevel.MEDIUM
        return ComplexityLevel.LOW

    def suggest_bundles_by_path(self, file_path: str) -> List[str]:
        """Bundles whose path rules match ``file_path``, in rule order."""
        attributes = {
            "name": Path(file_path).stem,
            "path": file_path,
            "subtype": "",
            "code": "",
            "imports": "",
            "exported": False,
            "async": False,
        }
        suggestions: List[str] = []
        for rule in self.rules.bundle_rules:
            if rule.bundle not in suggestions and rule.applies(attributes):
                suggestions.append(rule.bundle)
        return suggestions
