"""
Pattern-based extraction rules.

Rules are plain data: patterns, a named validator, importance boosts, and string templates
for the content, dedupe key and optional entity. ``find_matches`` and ``RuleMatch`` interpret
them. Rules are evaluated in declaration order and several may fire on the same message.

Template placeholders: ``{value}`` (normalized value), ``{slug}`` (lowercase value with
whitespace as underscores), ``{upper}`` (uppercase value) and ``{match}`` (full match text).
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..models.core import ConflictStrategy, EntityType, ExtractedEntity, MemoryType, ValidationResult
from ..utils.timestamp_utils import utc_now

# ==================== GPA scales ====================


@dataclass(frozen=True)
class GPAScale:
    name: str
    maximum: float

    def to_four_point(self, value: float) -> float:
        return value / self.maximum * 4.0


GPA_SCALES = (
    GPAScale('4.0制', 4.0),
    GPAScale('4.3制', 4.3),
    GPAScale('5.0制', 5.0),
    GPAScale('10分制', 10.0),
    GPAScale('100分制', 100.0),
)

_SCALE_DENOMINATOR = re.compile(r'(?:/|满分\s*)(\d+(?:\.\d)?)')
_SCALE_WORDING = (
    (re.compile(r'满分\s*(4\.?0?|四)(?![.3])', re.IGNORECASE), GPA_SCALES[0]),
    (re.compile(r'满分\s*4\.3', re.IGNORECASE), GPA_SCALES[1]),
    (re.compile(r'满分\s*(5\.?0?|五)', re.IGNORECASE), GPA_SCALES[2]),
    (re.compile(r'满分\s*(10|十)', re.IGNORECASE), GPA_SCALES[3]),
    (re.compile(r'满分\s*(100|百)|百分制', re.IGNORECASE), GPA_SCALES[4]),
)


def detect_gpa_scale(value: float, context: str = '') -> Optional[GPAScale]:
    """Pick the GPA scale from a denominator, "满分" wording, or the value's magnitude."""
    if context:
        denominator = _SCALE_DENOMINATOR.search(context)
        if denominator:
            maximum = float(denominator.group(1))
            for scale in GPA_SCALES:
                if abs(maximum - scale.maximum) < 0.1:
                    return scale

        for wording, scale in _SCALE_WORDING:
            if wording.search(context):
                return scale

    for scale in GPA_SCALES:
        if value <= scale.maximum:
            return scale
    return None


def validate_gpa(value: str, context: str = '') -> ValidationResult:
    """Validate a GPA on any supported scale and report it alongside its 4.0 equivalent.

    Args:
        value: Captured number
        context: Full match text, which may carry the scale (e.g. "3.8/4.0" or "满分5.0")

    Returns:
        ValidationResult; 4.0-scale values normalize to two decimals ("3.80")
    """
    try:
        number = float(value)
    except ValueError:
        return ValidationResult(valid=False, error='GPA must be a number')
    if number < 0:
        return ValidationResult(valid=False, error='GPA cannot be negative')

    scale = detect_gpa_scale(number, context)
    if scale is None:
        return ValidationResult(valid=False, error='GPA exceeds every known scale (max 100)')
    if number > scale.maximum:
        return ValidationResult(valid=False, error=f'{scale.name} GPA must be within 0-{scale.maximum:g}')

    four_point = scale.to_four_point(number)
    if scale is GPA_SCALES[0]:
        normalized = f'{number:.2f}'
    else:
        digits = 1 if scale.maximum >= 10 else 2
        normalized = f'{number:.{digits}f} ({scale.name}, 约合 {four_point:.2f}/4.0)'

    return ValidationResult(valid=True,
                            normalized=normalized,
                            metadata={
                                'original_value': number,
                                'scale': scale.name,
                                'normalized_value': four_point
                            })


# ==================== Validators ====================

Validator = Callable[[str, str], ValidationResult]


def _int_range(label: str, low: int, high: int) -> Validator:

    def validate(value: str, context: str = '') -> ValidationResult:
        try:
            number = int(value)
        except ValueError:
            return ValidationResult(valid=False, error=f'{label} must be an integer')
        if number < low or number > high:
            return ValidationResult(valid=False, error=f'{label} must be within {low}-{high}')
        return ValidationResult(valid=True, normalized=str(number))

    return validate


def validate_ielts(value: str, context: str = '') -> ValidationResult:
    try:
        number = float(value)
    except ValueError:
        return ValidationResult(valid=False, error='IELTS must be a number')
    if number < 0 or number > 9:
        return ValidationResult(valid=False, error='IELTS must be within 0-9')
    return ValidationResult(valid=True, normalized=f'{number:.1f}')


def validate_school(value: str, context: str = '') -> ValidationResult:
    trimmed = value.strip()
    if len(trimmed) < 2:
        return ValidationResult(valid=False, error='School name too short')
    if len(trimmed) > 100:
        return ValidationResult(valid=False, error='School name too long')
    return ValidationResult(valid=True, normalized=trimmed)


def validate_major(value: str, context: str = '') -> ValidationResult:
    trimmed = value.strip()
    if len(trimmed) < 2:
        return ValidationResult(valid=False, error='Major name too short')
    return ValidationResult(valid=True, normalized=trimmed)


def validate_year(value: str, context: str = '') -> ValidationResult:
    try:
        year = int(value)
    except ValueError:
        return ValidationResult(valid=False, error='Year must be an integer')
    current = utc_now().year
    if year < current - 10 or year > current + 10:
        return ValidationResult(valid=False, error='Year out of range')
    return ValidationResult(valid=True, normalized=str(year))


def validate_text(value: str, context: str = '') -> ValidationResult:
    trimmed = value.strip()
    if not trimmed:
        return ValidationResult(valid=False, error='Empty value')
    return ValidationResult(valid=True, normalized=trimmed)


VALIDATORS: Dict[str, Validator] = {
    'gpa': validate_gpa,
    'sat': _int_range('SAT', 400, 1600),
    'act': _int_range('ACT', 1, 36),
    'toefl': _int_range('TOEFL', 0, 120),
    'ielts': validate_ielts,
    'rank': _int_range('Rank', 1, 1000),
    'school': validate_school,
    'major': validate_major,
    'year': validate_year,
    'text': validate_text,
}

# ==================== Rule model ====================


@dataclass(frozen=True)
class EntityTemplate:
    """Entity emitted alongside a rule's memory; its name is the matched value."""
    type: EntityType
    description: str
    attributes: Tuple[Tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class ExtractionRule:
    """Immutable description of one extraction rule."""
    id: str
    name: str
    type: MemoryType
    category: str
    patterns: Tuple[re.Pattern, ...]
    base_importance: float
    validator: str
    dedupe_key: str
    conflict_strategy: ConflictStrategy
    ttl_days: int
    importance_boosts: Tuple[Tuple[str, float], ...] = ()
    content: str = '{value}'
    entity: Optional[EntityTemplate] = None

    def importance_for(self, message: str) -> float:
        """Base importance plus every boost whose condition appears in the message, capped at 1."""
        lowered = message.lower()
        importance = self.base_importance
        for condition, boost in self.importance_boosts:
            if condition.lower() in lowered:
                importance = min(1.0, importance + boost)
        return importance


@dataclass
class RuleMatch:
    """One pattern hit for a rule, with its validation outcome."""
    rule: ExtractionRule
    match: re.Match
    raw_value: str
    validation: ValidationResult = field(default_factory=lambda: ValidationResult(valid=False))

    @property
    def value(self) -> str:
        return self.validation.normalized or self.raw_value

    def render(self, template: str) -> str:
        value = self.value
        return template.format(value=value,
                               slug=re.sub(r'\s+', '_', value.lower()),
                               upper=value.upper(),
                               match=self.match.group(0))

    @property
    def content(self) -> str:
        return self.render(self.rule.content)

    @property
    def dedupe_key(self) -> str:
        return self.render(self.rule.dedupe_key)

    def entity(self) -> Optional[ExtractedEntity]:
        template = self.rule.entity
        if template is None:
            return None
        return ExtractedEntity(type=template.type,
                               name=self.value,
                               source='rule',
                               description=self.render(template.description),
                               attributes=dict(template.attributes))


def find_matches(rule: ExtractionRule, message: str, first_only: bool = False) -> Iterator[RuleMatch]:
    """Scan a message with every pattern of a rule and validate each hit.

    The validator receives the captured value (the whole match when the pattern has no
    capture group) and the full match text as context.

    Args:
        rule: Rule to apply
        message: Message text
        first_only: Stop after the first pattern hit

    Yields:
        RuleMatch for every hit, valid or not
    """
    validate = VALIDATORS[rule.validator]
    for pattern in rule.patterns:
        for match in pattern.finditer(message):
            raw_value = match.group(1) if pattern.groups and match.group(1) else match.group(0)
            yield RuleMatch(rule=rule, match=match, raw_value=raw_value, validation=validate(raw_value, match.group(0)))
            if first_only:
                return


def _compile(*patterns: str) -> Tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# ==================== Rule table ====================

_WORD = r'一-龥a-zA-Z'
_SCHOOL_SUFFIX = r'(?:大学|学院|University|College|MIT|Stanford|Harvard|Yale|Princeton|Berkeley|UCLA|Columbia|CMU|NYU|Duke)'

EXTRACTION_RULES: List[ExtractionRule] = [
    # Academics
    ExtractionRule(id='gpa',
                   name='GPA',
                   type=MemoryType.FACT,
                   category='academic',
                   patterns=_compile(
                       r'(?:我的?)?(?:GPA|绩点)\s*(?:是|为|有)?\s*(\d+(?:\.\d+)?)(?:\s*/\s*(\d+(?:\.\d+)?))?',
                       r'(?:GPA|绩点)\s*[:：]\s*(\d+(?:\.\d+)?)(?:\s*/\s*(\d+(?:\.\d+)?))?',
                       r'(\d+(?:\.\d+)?)\s*(?:的|/)?\s*(?:GPA|绩点)(?:\s*/\s*(\d+(?:\.\d+)?))?',
                       r'(\d+(?:\.\d+)?)\s*/\s*(\d+(?:\.\d+)?)\s*(?:GPA|绩点|分)?',
                       r'(?:平均分|均分|加权平均分|weighted GPA)\s*(?:是|为)?\s*(\d+(?:\.\d+)?)',
                       r'(?:GPA|绩点)\s*(\d+(?:\.\d+)?)\s*(?:满分\s*)?(\d+(?:\.\d+)?)?',
                   ),
                   base_importance=0.9,
                   importance_boosts=(('unweighted', 0.05), ('weighted', 0.03), ('最终', 0.02)),
                   validator='gpa',
                   dedupe_key='user:gpa',
                   conflict_strategy=ConflictStrategy.KEEP_LATEST,
                   ttl_days=365,
                   content='GPA: {value}'),
    ExtractionRule(id='class_rank',
                   name='年级排名',
                   type=MemoryType.FACT,
                   category='academic',
                   patterns=_compile(
                       r'(?:年级|班级)\s*排名\s*(?:是|为)?\s*(?:第\s*)?(\d+)',
                       r'排名\s*(?:第\s*)?(\d+)\s*(?:名|位)',
                       r'(?:top|前)\s*(\d+)(?:%|名)',
                   ),
                   base_importance=0.8,
                   importance_boosts=(('top 10', 0.1), ('第一', 0.1)),
                   validator='rank',
                   dedupe_key='user:rank',
                   conflict_strategy=ConflictStrategy.KEEP_LATEST,
                   ttl_days=365,
                   content='年级排名: 第{value}名'),
    # Standardized tests
    ExtractionRule(id='sat',
                   name='SAT',
                   type=MemoryType.FACT,
                   category='test_score',
                   patterns=_compile(
                       r'SAT\s*(?:成绩|分数)?\s*(?:是|为|有|考了)?\s*(1[0-6]\d{2}|[4-9]\d{2})',
                       r'(1[0-6]\d{2}|[4-9]\d{2})\s*(?:分|分数)?\s*(?:的\s*)?SAT',
                       r'SAT\s*[:：]\s*(1[0-6]\d{2}|[4-9]\d{2})',
                   ),
                   base_importance=0.9,
                   importance_boosts=(('1550', 0.05), ('1500', 0.03), ('最高', 0.02)),
                   validator='sat',
                   dedupe_key='user:sat',
                   conflict_strategy=ConflictStrategy.KEEP_HIGHEST,
                   ttl_days=730,
                   content='SAT: {value}'),
    ExtractionRule(id='act',
                   name='ACT',
                   type=MemoryType.FACT,
                   category='test_score',
                   patterns=_compile(
                       r'ACT\s*(?:成绩|分数)?\s*(?:是|为|有|考了)?\s*(3[0-6]|[12]?\d)',
                       r'(3[0-6]|[12]?\d)\s*(?:分|分数)?\s*(?:的\s*)?ACT',
                       r'ACT\s*[:：]\s*(3[0-6]|[12]?\d)',
                   ),
                   base_importance=0.9,
                   importance_boosts=(('35', 0.05), ('34', 0.03)),
                   validator='act',
                   dedupe_key='user:act',
                   conflict_strategy=ConflictStrategy.KEEP_HIGHEST,
                   ttl_days=730,
                   content='ACT: {value}'),
    ExtractionRule(id='toefl',
                   name='TOEFL',
                   type=MemoryType.FACT,
                   category='test_score',
                   patterns=_compile(
                       r'(?:TOEFL|托福)\s*(?:成绩|分数)?\s*(?:是|为|有|考了)?\s*(1[0-2]\d|\d{1,2})',
                       r'(1[0-2]\d|\d{1,2})\s*(?:分|分数)?\s*(?:的\s*)?(?:TOEFL|托福)',
                       r'(?:TOEFL|托福)\s*[:：]\s*(1[0-2]\d|\d{1,2})',
                   ),
                   base_importance=0.85,
                   importance_boosts=(('110', 0.05), ('100', 0.03)),
                   validator='toefl',
                   dedupe_key='user:toefl',
                   conflict_strategy=ConflictStrategy.KEEP_HIGHEST,
                   ttl_days=730,
                   content='TOEFL: {value}'),
    ExtractionRule(id='ielts',
                   name='IELTS',
                   type=MemoryType.FACT,
                   category='test_score',
                   patterns=_compile(
                       r'(?:IELTS|雅思)\s*(?:成绩|分数)?\s*(?:是|为|有|考了)?\s*([0-9](?:\.[05])?)',
                       r'([0-9](?:\.[05])?)\s*(?:分|分数)?\s*(?:的\s*)?(?:IELTS|雅思)',
                   ),
                   base_importance=0.85,
                   importance_boosts=(('8.0', 0.05), ('7.5', 0.03)),
                   validator='ielts',
                   dedupe_key='user:ielts',
                   conflict_strategy=ConflictStrategy.KEEP_HIGHEST,
                   ttl_days=730,
                   content='IELTS: {value}'),
    # Schools and decisions
    ExtractionRule(id='target_school',
                   name='目标学校',
                   type=MemoryType.PREFERENCE,
                   category='school',
                   patterns=_compile(
                       r'(?:想|要|打算|计划|准备)(?:申请|去|上)\s*([' + _WORD + r'\s]+' + _SCHOOL_SUFFIX + ')',
                       r'(?:梦校|dream school|目标)\s*(?:是|为)?\s*([' + _WORD + r'\s]+)',
                       r'(MIT|Stanford|Harvard|Yale|Princeton|Berkeley|UCLA|Columbia|CMU|NYU|Duke|Cornell|Brown|UPenn|'
                       r'Caltech|Northwestern|Chicago|JHU|Rice|Vanderbilt|Notre Dame|Emory|Georgetown|USC|UMich|UVA)'
                       r'\s*(?:是我的?|是目标)',
                   ),
                   base_importance=0.85,
                   importance_boosts=(('梦校', 0.1), ('ED', 0.1), ('第一志愿', 0.1)),
                   validator='school',
                   dedupe_key='school:{slug}',
                   conflict_strategy=ConflictStrategy.KEEP_BOTH,
                   ttl_days=365,
                   content='目标学校: {value}',
                   entity=EntityTemplate(type=EntityType.SCHOOL,
                                         description='用户目标学校',
                                         attributes=(('interest', 'target'),))),
    ExtractionRule(id='ed_decision',
                   name='ED 决定',
                   type=MemoryType.DECISION,
                   category='application',
                   patterns=_compile(
                       r'(?:ED|早申|绑定|提前决定)\s*(?:申请|选择|定了|决定)?\s*([' + _WORD + r'\s]+' + _SCHOOL_SUFFIX + ')',
                       r'(?:决定|已经|要)\s*ED\s*([' + _WORD + r'\s]+)',
                   ),
                   base_importance=0.95,
                   importance_boosts=(('确定', 0.05), ('最终', 0.05)),
                   validator='school',
                   dedupe_key='user:ed_decision',
                   conflict_strategy=ConflictStrategy.KEEP_LATEST,
                   ttl_days=365,
                   content='ED 决定: {value}',
                   entity=EntityTemplate(type=EntityType.SCHOOL,
                                         description='用户 ED 学校',
                                         attributes=(('round', 'ED'), ('decision', True)))),
    ExtractionRule(id='intended_major',
                   name='意向专业',
                   type=MemoryType.PREFERENCE,
                   category='academic',
                   patterns=_compile(
                       r'(?:想学|打算学|意向|专业)\s*(?:是|为)?\s*([' + _WORD + r'\s]+)',
                       r'(?:学|读)\s*(计算机|CS|Computer Science|工程|Engineering|商科|Business|经济|Economics|数学|'
                       r'Mathematics|物理|Physics|生物|Biology|化学|Chemistry|心理学|Psychology|艺术|Art)',
                       r'(?:major|专业)\s*[:：]\s*([' + _WORD + r'\s]+)',
                   ),
                   base_importance=0.8,
                   importance_boosts=(('STEM', 0.05), ('确定', 0.05)),
                   validator='major',
                   dedupe_key='user:intended_major',
                   conflict_strategy=ConflictStrategy.KEEP_LATEST,
                   ttl_days=365,
                   content='意向专业: {value}'),
    # Experience
    ExtractionRule(id='activity',
                   name='课外活动',
                   type=MemoryType.FACT,
                   category='extracurricular',
                   patterns=_compile(
                       r'(?:参加了?|加入了?|做过|有)\s*([' + _WORD + r']+)\s*(?:活动|社团|组织|俱乐部|项目|比赛|竞赛)',
                       r'(?:是|担任)\s*([' + _WORD + r']+)\s*(?:主席|会长|社长|队长|负责人|创始人)',
                       r'(?:获得|赢得|拿到)\s*([' + _WORD + r']+)\s*(?:奖|奖项|名次|荣誉)',
                   ),
                   base_importance=0.7,
                   importance_boosts=(('国际', 0.15), ('全国', 0.1), ('省级', 0.05), ('创始人', 0.1), ('主席', 0.08)),
                   validator='text',
                   dedupe_key='activity:{slug}',
                   conflict_strategy=ConflictStrategy.KEEP_BOTH,
                   ttl_days=730,
                   content='活动: {match}'),
    ExtractionRule(id='competition',
                   name='竞赛',
                   type=MemoryType.FACT,
                   category='competition',
                   patterns=_compile(
                       r'(?:参加了?|报名了?|准备)\s*(AMC|AIME|USAMO|USABO|ISEF|USACO|Physics Olympiad|数学竞赛|物理竞赛|'
                       r'生物竞赛|化学竞赛|信息学竞赛|Science Olympiad|Math Olympiad|Intel|Regeneron|HMMT|ARML|MATHCOUNTS)',
                       r'(?:参加了?|报名了?|准备)\s*([' + _WORD + r']+)\s*(?:竞赛|奥赛|奥林匹克)',
                       r'(?:获得|拿到|赢得)\s*([' + _WORD + r']+)\s*(?:竞赛|奥赛)\s*(?:金|银|铜|一等|二等|三等)?(?:奖|名次)',
                   ),
                   base_importance=0.85,
                   importance_boosts=(('国际', 0.1), ('全国', 0.08), ('金奖', 0.1), ('银奖', 0.05), ('USAMO', 0.1),
                                      ('AIME', 0.08), ('ISEF', 0.1)),
                   validator='text',
                   dedupe_key='competition:{slug}',
                   conflict_strategy=ConflictStrategy.KEEP_BOTH,
                   ttl_days=730,
                   content='竞赛: {match}',
                   entity=EntityTemplate(type=EntityType.EVENT,
                                         description='竞赛经历: {match}',
                                         attributes=(('category', 'competition'),))),
    ExtractionRule(id='summer_program',
                   name='夏校',
                   type=MemoryType.FACT,
                   category='summer_program',
                   patterns=_compile(
                       r'(?:参加了?|申请了?|去了?|录取了?)\s*([' + _WORD + r'\s]+)\s*'
                       r'(?:夏校|暑期项目|暑期课程|summer program|summer school)',
                       r'(?:RSI|ROSS|PROMYS|SUMaC|SSP|TASP|MITES|Clark Scholar|Garcia|Simons|Telluride|MOSTEC|LaunchX)\b',
                       r'(?:参加了?|申请了?|录取了?)\s*(RSI|ROSS|PROMYS|SUMaC|SSP|TASP|MITES|Clark Scholar|Garcia|Simons)',
                   ),
                   base_importance=0.8,
                   importance_boosts=(('RSI', 0.15), ('TASP', 0.1), ('SSP', 0.1), ('录取', 0.05)),
                   validator='text',
                   dedupe_key='summer:{slug}',
                   conflict_strategy=ConflictStrategy.KEEP_BOTH,
                   ttl_days=730,
                   content='夏校: {match}',
                   entity=EntityTemplate(type=EntityType.EVENT,
                                         description='暑期项目/夏校',
                                         attributes=(('category', 'summer_program'),))),
    ExtractionRule(id='internship',
                   name='实习',
                   type=MemoryType.FACT,
                   category='internship',
                   patterns=_compile(
                       r'(?:在|去)\s*([' + _WORD + r'\s]+)\s*(?:实习|intern)',
                       r'(?:做了?|有)\s*([' + _WORD + r'\s]+)\s*(?:的\s*)?(?:实习|研究助理|research assistant|RA)',
                       r'(?:实习|intern)\s*(?:在|于)\s*([' + _WORD + r'\s]+)',
                   ),
                   base_importance=0.75,
                   importance_boosts=(('研究', 0.1), ('教授', 0.08), ('lab', 0.08)),
                   validator='text',
                   dedupe_key='intern:{slug}',
                   conflict_strategy=ConflictStrategy.KEEP_BOTH,
                   ttl_days=730,
                   content='实习: {match}'),
    ExtractionRule(id='material_prep',
                   name='材料准备',
                   type=MemoryType.FACT,
                   category='material',
                   patterns=_compile(
                       r'(?:推荐信|recommendation letter)\s*(?:找了?|请了?|联系了?)\s*([' + _WORD + r'\s]+)',
                       r'(?:成绩单|transcript|作品集|portfolio)\s*(?:已经|准备好|寄了|提交了)',
                       r'(?:已经|刚|正在)\s*(?:准备|提交|寄送)\s*(推荐信|成绩单|作品集|transcript|portfolio|简历|CV|resume)',
                   ),
                   base_importance=0.65,
                   importance_boosts=(('推荐信', 0.1), ('作品集', 0.1)),
                   validator='text',
                   dedupe_key='material:{slug}',
                   conflict_strategy=ConflictStrategy.KEEP_BOTH,
                   ttl_days=365,
                   content='材料: {match}'),
    # Planning
    ExtractionRule(id='enrollment_year',
                   name='入学年份',
                   type=MemoryType.FACT,
                   category='timeline',
                   patterns=_compile(
                       r'(?:准备|计划|打算)\s*(20\d{2})\s*(?:年|fall|spring)?\s*(?:入学|入读|开始)',
                       r'(20\d{2})\s*(?:届|级|fall|spring)\s*(?:学生|申请者)?',
                       r'(?:class of|毕业于)\s*(20\d{2})',
                   ),
                   base_importance=0.85,
                   validator='year',
                   dedupe_key='user:enrollment_year',
                   conflict_strategy=ConflictStrategy.KEEP_LATEST,
                   ttl_days=365,
                   content='入学年份: {value}'),
    ExtractionRule(id='location_preference',
                   name='地区偏好',
                   type=MemoryType.PREFERENCE,
                   category='preference',
                   patterns=_compile(
                       r'(?:喜欢|想去|偏好|prefer)\s*(东海岸|西海岸|East Coast|West Coast|加州|California|纽约|New York|'
                       r'波士顿|Boston|中部|南部)',
                       r'(?:不想去|不喜欢|避开)\s*([' + _WORD + r']+)\s*(?:的学校|地区|城市)',
                   ),
                   base_importance=0.6,
                   importance_boosts=(('明确', 0.1), ('必须', 0.15)),
                   validator='text',
                   dedupe_key='user:location_pref',
                   conflict_strategy=ConflictStrategy.KEEP_LATEST,
                   ttl_days=365,
                   content='地区偏好: {value}'),
    ExtractionRule(id='budget',
                   name='预算',
                   type=MemoryType.FACT,
                   category='financial',
                   patterns=_compile(
                       r'(?:预算|budget|每年|一年)\s*(?:是|为|大约|约)?\s*(\d+)\s*(?:万|w|k|美元|刀)?',
                       r'(?:家里|父母|家庭)\s*(?:能出|可以出|支持)\s*(\d+)\s*(?:万|w|k|美元|刀)?',
                       r'(?:需要|必须|希望)\s*(?:拿到|获得)?\s*(?:奖学金|助学金|financial aid)',
                   ),
                   base_importance=0.75,
                   importance_boosts=(('奖学金', 0.1), ('助学金', 0.1)),
                   validator='text',
                   dedupe_key='user:budget',
                   conflict_strategy=ConflictStrategy.KEEP_LATEST,
                   ttl_days=365,
                   content='预算: {match}'),
    ExtractionRule(id='application_round',
                   name='申请轮次',
                   type=MemoryType.DECISION,
                   category='application',
                   patterns=_compile(
                       r'(?:准备|打算|计划)\s*(?:申请)?\s*(EA|ED|RD|ED2|REA|SCEA|早申|常规|提前)\s*(?:轮|轮次)?',
                       r'(EA|ED|RD|ED2|REA|SCEA)\s*(?:申请|deadline|截止)',
                   ),
                   base_importance=0.8,
                   importance_boosts=(('ED', 0.1), ('REA', 0.1)),
                   validator='text',
                   dedupe_key='round:{upper}',
                   conflict_strategy=ConflictStrategy.KEEP_BOTH,
                   ttl_days=365,
                   content='申请轮次: {upper}'),
]

RULES_BY_ID = {rule.id: rule for rule in EXTRACTION_RULES}
