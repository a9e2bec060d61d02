"""
Compila pedidos de busca em queries upstream.

  - Overpass QL: uma única união node/way/relation por seletor de tag,
    limitada por bbox ou por `around:` (centro + raio).
  - Foursquare: uma sub-requisição por categoria (o parâmetro `query`
    funciona melhor que IDs de categoria em muitos países).

O texto compilado é determinístico (categorias em ordem fixa, coordenadas
com 6 casas) — é ele que vira a chave de cache.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional
from urllib.parse import urlencode

from app.core.cache import CacheService
from app.core.config import get_settings
from app.schemas import GeoBoundingBox, RadiusQuery

settings = get_settings()

ELEMENT_TYPES = ("node", "way", "relation")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def escape_ql(value: str) -> str:
    """Escapa um literal de string Overpass QL (aspas, barra, quebras de linha)."""
    value = _CONTROL_CHARS.sub("", value)
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
    )


def _quote(value: str) -> str:
    return f'"{escape_ql(value)}"'


def _fmt(coord: float) -> str:
    return f"{coord:.6f}"


@dataclass(frozen=True)
class TagPredicate:
    """`[key]`, `[key=value]` ou `[key~regex]`."""

    key: str
    value: Optional[str] = None
    regex: bool = False

    def to_ql(self) -> str:
        if self.value is None:
            return f"[{_quote(self.key)}]"
        op = "~" if self.regex else "="
        return f"[{_quote(self.key)}{op}{_quote(self.value)}]"

    def matches(self, tags: Mapping[str, str]) -> bool:
        if self.key not in tags:
            return False
        if self.value is None:
            return True
        if self.regex:
            return re.search(self.value, str(tags[self.key])) is not None
        return tags[self.key] == self.value


# Tabela fixa, não editável em runtime
CATEGORY_FILTERS: dict[str, tuple[TagPredicate, ...]] = {
    "gym": (
        TagPredicate("amenity", "fitness_centre"),
        TagPredicate("leisure", "fitness_centre"),
        TagPredicate("sport", "fitness"),
    ),
    "nutritionist": (
        TagPredicate("healthcare", "nutritionist"),
        TagPredicate("healthcare", "dietitian"),
        TagPredicate("office", "dietitian"),
        TagPredicate("healthcare:speciality", "nutrition", regex=True),
    ),
}

# Nada reconhecido → busca permissiva em vez de erro
PERMISSIVE_PREDICATES: tuple[TagPredicate, ...] = (TagPredicate("amenity"),)

Selector = tuple[TagPredicate, ...]


@dataclass(frozen=True)
class ResolvedFilters:
    categories: tuple[str, ...] = ()
    custom: tuple[TagPredicate, ...] = ()

    @property
    def permissive(self) -> bool:
        return not self.categories and not self.custom

    @property
    def selectors(self) -> tuple[Selector, ...]:
        """
        Membros da união Overpass.  Cada predicado de categoria é um membro
        próprio (OU); os filtros customizados formam um único seletor
        encadeado `["a"="x"]["b"="y"]` (E).
        """
        if self.permissive:
            return (PERMISSIVE_PREDICATES,)
        selectors: list[Selector] = [(p,) for c in self.categories for p in CATEGORY_FILTERS[c]]
        if self.custom:
            selectors.append(self.custom)
        return tuple(selectors)


@dataclass(frozen=True)
class CompiledQuery:
    text: str
    namespace: str = "overpass"
    category: Optional[str] = None
    params: tuple[tuple[str, str], ...] = field(default=())

    @property
    def cache_key(self) -> str:
        return CacheService.make_key(self.namespace, self.text)


# ── Resolução de filtros ─────────────────────────────────────────

def _parse_custom(item: str) -> Optional[tuple[str, Optional[list[str]]]]:
    """`chave=valor` → (chave, [valores]); `chave=*` ou `chave=` → (chave, None)."""
    key, _, value = item.partition("=")
    key = key.strip()
    if not key:
        return None
    value = value.strip()
    if not value or value == "*":
        return key, None
    alts = [v.strip() for v in value.split("|") if v.strip()]
    return key, (alts or None)


def _custom_predicate(key: str, values: Optional[list[str]]) -> TagPredicate:
    if values is None:
        return TagPredicate(key)
    if len(values) == 1:
        return TagPredicate(key, values[0])
    alts = "|".join(re.escape(v) for v in values)
    return TagPredicate(key, f"^({alts})$", regex=True)


def resolve_filters(raw: Iterable[str] | str | None) -> ResolvedFilters:
    """
    Aceita lista repetida ou separada por vírgulas.  Nomes de categoria
    conhecidos viram predicados da tabela; `chave=valor` (ou `chave=a|b`,
    `chave=*`) vira filtro de tag customizado; o resto é ignorado.

    Valores repetidos da mesma chave viram uma alternância `^(a|b)$`;
    `chave=*` em qualquer repetição aceita qualquer valor.
    """
    if raw is None:
        raw = []
    elif isinstance(raw, str):
        raw = [raw]

    categories: set[str] = set()
    custom: dict[str, Optional[list[str]]] = {}
    for chunk in raw:
        for item in str(chunk).split(","):
            item = item.strip()
            if not item:
                continue
            if "=" in item:
                parsed = _parse_custom(item)
                if parsed is None:
                    continue
                key, values = parsed
                if key in custom:
                    known = custom[key]
                    if known is None or values is None:
                        custom[key] = None
                    else:
                        known.extend(v for v in values if v not in known)
                else:
                    custom[key] = list(dict.fromkeys(values)) if values else None
            elif item.lower() in CATEGORY_FILTERS:
                categories.add(item.lower())

    ordered = tuple(c for c in CATEGORY_FILTERS if c in categories)
    preds = tuple(_custom_predicate(key, custom[key]) for key in sorted(custom))
    return ResolvedFilters(categories=ordered, custom=preds)


def classify(tags: Mapping[str, str], filters: ResolvedFilters) -> str:
    """Categoria lógica de um elemento OSM a partir das suas tags."""
    candidates = filters.categories or tuple(CATEGORY_FILTERS)
    for category in candidates:
        if any(p.matches(tags) for p in CATEGORY_FILTERS[category]):
            return category
    for pred in filters.custom:
        if pred.matches(tags):
            return str(tags.get(pred.key) or pred.key)
    for key in ("amenity", "leisure", "healthcare", "office", "shop"):
        if tags.get(key):
            return str(tags[key])
    return "place"


# ── Overpass QL ──────────────────────────────────────────────────

def _union(
    selectors: Iterable[Selector],
    area: str,
    query_timeout: Optional[int],
    limit: Optional[int],
) -> CompiledQuery:
    query_timeout = settings.OVERPASS_QUERY_TIMEOUT if query_timeout is None else query_timeout
    limit = settings.OVERPASS_RESULT_LIMIT if limit is None else limit

    lines = [f"[out:json][timeout:{int(query_timeout)}];", "("]
    for selector in selectors:
        tag = "".join(p.to_ql() for p in selector)
        for element in ELEMENT_TYPES:
            lines.append(f"  {element}{tag}{area};")
    lines.append(");")
    lines.append(f"out center {int(limit)};")
    return CompiledQuery(text="\n".join(lines), namespace="overpass")


def compile_overpass_bbox(
    bbox: GeoBoundingBox,
    filters: ResolvedFilters,
    *,
    query_timeout: Optional[int] = None,
    limit: Optional[int] = None,
) -> CompiledQuery:
    area = f"({_fmt(bbox.south)},{_fmt(bbox.west)},{_fmt(bbox.north)},{_fmt(bbox.east)})"
    return _union(filters.selectors, area, query_timeout, limit)


def compile_overpass_around(
    query: RadiusQuery,
    filters: ResolvedFilters,
    *,
    query_timeout: Optional[int] = None,
    limit: Optional[int] = None,
) -> CompiledQuery:
    area = f"(around:{int(query.radius_m)},{_fmt(query.lat)},{_fmt(query.lon)})"
    return _union(filters.selectors, area, query_timeout, limit)


# ── Foursquare ───────────────────────────────────────────────────

def compile_primary_searches(
    query: RadiusQuery,
    filters: ResolvedFilters,
    *,
    limit: Optional[int] = None,
) -> list[CompiledQuery]:
    """Uma busca por categoria conhecida; filtros de tag não se aplicam aqui."""
    limit = settings.FOURSQUARE_LIMIT if limit is None else limit
    searches: list[CompiledQuery] = []
    for category in filters.categories:
        params = (
            ("ll", f"{_fmt(query.lat)},{_fmt(query.lon)}"),
            ("radius", str(int(query.radius_m))),
            ("query", category),
            ("limit", str(int(limit))),
            ("sort", "DISTANCE"),
        )
        searches.append(CompiledQuery(
            text=urlencode(params),
            namespace="foursquare",
            category=category,
            params=params,
        ))
    return searches
