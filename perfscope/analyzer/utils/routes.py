"""
Route identity helpers: screen-time context parsing and route pattern normalization
"""

import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from attr import dataclass, field

from perfscope.domain.entities.metric_sample import MetricSample


DYNAMIC_PLACEHOLDER = ':id'
UNKNOWN_ROUTE = 'unknown'

STATIC_SEGMENTS = frozenset({
    'home', 'dashboard', 'settings', 'profile', 'about', 'contact', 'game',
    'menu', 'list', 'detail', 'details', 'edit', 'create', 'view', 'session',
    'app', 'user', 'users', 'product', 'item', 'devices', 'metrics',
    'analytics', 'insights', 'search', 'routes',
})

_UUID_RE = re.compile(r'^[a-f0-9-]{36}$', re.IGNORECASE)
_NUMERIC_RE = re.compile(r'^\d+$')
_TOKEN_RE = re.compile(r'^[A-Za-z0-9_-]{10,}$')
_DIGIT_RE = re.compile(r'\d')

DynamicSegmentPredicate = Callable[[str], bool]


def is_template_segment(segment: str) -> bool:
    """`[id]` or `:id` style segments are route parameters already"""
    return (segment.startswith('[') and segment.endswith(']')) or segment.startswith(':')


def is_dynamic_segment(segment: str) -> bool:
    """Default heuristic: numeric, UUID-shaped or a long opaque token containing digits."""
    if not segment or segment.lower() in STATIC_SEGMENTS:
        return False
    if _NUMERIC_RE.match(segment) or _UUID_RE.match(segment):
        return True
    return bool(_TOKEN_RE.match(segment) and _DIGIT_RE.search(segment))


def normalize_route(path: Optional[str], is_dynamic: DynamicSegmentPredicate = is_dynamic_segment) -> str:
    """
    Canonical route pattern of a path.

    >>> normalize_route('/user/123')
    '/user/:id'
    """
    if not path:
        return '/'
    segments = [s for s in path.split('?')[0].strip().split('/') if s]
    normalized = [
        DYNAMIC_PLACEHOLDER if is_template_segment(s) or is_dynamic(s) else s
        for s in segments
    ]
    return '/' + '/'.join(normalized)


@dataclass(slots=True, frozen=True)
class ScreenContext:
    route_name: str
    route_path: Optional[str]
    segments: tuple[str, ...] = field(factory=tuple)
    screen_start_time: Optional[datetime] = None


def to_datetime(value: Any) -> Optional[datetime]:
    """Datetime, epoch milliseconds or ISO string to an aware datetime; naive values are taken as UTC"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            return None
    return None


def _full_context(ctx: dict) -> Optional[ScreenContext]:
    segments = ctx.get('segments')
    if isinstance(segments, list) and ctx.get('routeName') and ctx.get('routePath'):
        return ScreenContext(
            route_name=str(ctx['routeName']),
            route_path=str(ctx['routePath']),
            segments=tuple(str(s) for s in segments),
            screen_start_time=to_datetime(ctx.get('screenStartTime')),
        )
    return None


def parse_screen_context(context: Any) -> Optional[ScreenContext]:
    """Extract route identity from a sample context, trying the known layouts in order."""
    if not isinstance(context, dict) or not context:
        return None

    parsed = _full_context(context)
    if parsed:
        return parsed

    nested = context.get('screen_time')
    if isinstance(nested, dict):
        parsed = _full_context(nested)
        if parsed:
            return parsed

    route_path = context.get('routePath') if isinstance(context.get('routePath'), str) else None
    navigation = context.get('navigation') if isinstance(context.get('navigation'), dict) else {}
    for candidate in (
        context.get('screen_name'),
        context.get('routeName'),
        route_path,
        navigation.get('screen_name'),
        context.get('screen'),
    ):
        if isinstance(candidate, str) and candidate:
            return ScreenContext(
                route_name=candidate,
                route_path=route_path,
                screen_start_time=to_datetime(context.get('screenStartTime')),
            )
    return None


def screen_name_to_path(name: str) -> str:
    return '/' + re.sub(r'\s+', '-', name.strip().lower()).lstrip('/')


class RouteNormalizer:
    """Maps sample contexts to route patterns with a replaceable dynamic-segment predicate."""

    def __init__(self, is_dynamic: DynamicSegmentPredicate = is_dynamic_segment):
        self.is_dynamic = is_dynamic

    def normalize(self, path: Optional[str], flagged: Iterable[str] = ()) -> str:
        flagged = set(flagged)
        return normalize_route(path, lambda s: s in flagged or self.is_dynamic(s))

    def pattern_for(self, screen: ScreenContext) -> str:
        if not screen.route_path:
            return self.normalize(screen_name_to_path(screen.route_name))
        # a template segment in the context marks the path segment at the same position
        parts = [p for p in screen.route_path.split('?')[0].split('/') if p]
        flagged = {
            parts[i] for i, segment in enumerate(screen.segments)
            if i < len(parts) and is_template_segment(segment)
        }
        return self.normalize(screen.route_path, flagged)

    def route_for_sample(self, sample: MetricSample) -> Optional[str]:
        screen = parse_screen_context(sample.context)
        if screen is None:
            return None
        return self.pattern_for(screen)

    def display_name(self, screen: ScreenContext) -> str:
        name = screen.route_name
        if screen.route_path and screen.route_path != name:
            parts = [p for p in screen.route_path.split('/') if p]
            if len(parts) <= 2:
                name = screen.route_path
            elif parts and not (is_template_segment(parts[-1]) or self.is_dynamic(parts[-1])):
                name = parts[-1]
        return re.sub(r'[-_]', ' ', name).title()


default_normalizer = RouteNormalizer()
