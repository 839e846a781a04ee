"""
Multilingual vocabulary shared by the fallback paths.

Everything here is static data plus small lookup helpers; the tables cover
English, Thai, Spanish, French, German and Portuguese.
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from sheetquery.utils.column_mapping import dominant_script, normalize_colname, normalize_text, UNDELIMITED_SCRIPTS

# canonical concept -> variants (canonical first)
CONCEPT_VARIANTS: Dict[str, List[str]] = {
    "vendor": ["vendor", "supplier", "seller", "merchant", "provider", "ผู้ขาย", "ผู้จำหน่าย", "บริษัท",
               "proveedor", "vendedor", "fournisseur", "vendeur", "lieferant", "anbieter", "fornecedor"],
    "customer": ["customer", "client", "buyer", "ลูกค้า", "cliente", "comprador", "acheteur", "kunde", "käufer"],
    "amount": ["amount", "value", "จำนวนเงิน", "เงิน", "importe", "monto", "montant", "betrag", "valor", "quantia"],
    "total": ["total", "grand total", "ยอดรวม", "suma", "somme", "summe", "gesamt", "soma"],
    "payment": ["payment", "paid", "transaction", "การชำระ", "ชำระเงิน", "การจ่าย", "pago", "paiement", "zahlung",
                "pagamento"],
    "sales": ["sales", "revenue", "turnover", "ยอดขาย", "รายได้", "ventas", "ingresos", "ventes", "umsatz", "vendas",
              "receita"],
    "invoice": ["invoice", "bill", "receipt", "ใบแจ้งหนี้", "ใบกำกับภาษี", "ใบเสร็จ", "factura", "facture", "rechnung",
                "fatura"],
    "date": ["date", "วันที่", "fecha", "datum", "dia"],
    "name": ["name", "ชื่อ", "nombre", "nom", "nome"],
    "email": ["email", "e-mail", "อีเมล", "correo", "courriel"],
    "phone": ["phone", "telephone", "mobile", "เบอร์โทร", "โทรศัพท์", "teléfono", "téléphone", "telefon", "telefone"],
    "address": ["address", "ที่อยู่", "dirección", "adresse", "endereço"],
    "price": ["price", "cost", "unit price", "ราคา", "precio", "prix", "preis", "preço", "custo"],
    "quantity": ["quantity", "qty", "units", "จำนวน", "cantidad", "quantité", "menge", "quantidade"],
    "product": ["product", "item", "sku", "สินค้า", "producto", "produit", "produkt", "produto"],
    "description": ["description", "details", "รายละเอียด", "descripción", "libellé", "beschreibung", "descrição"],
    "category": ["category", "ประเภท", "หมวดหมู่", "categoría", "catégorie", "kategorie", "categoria"],
    "status": ["status", "สถานะ", "estado", "statut"],
    "department": ["department", "แผนก", "departamento", "département", "abteilung"],
}

# Bidirectional synonym clusters used by the column matcher.
SYNONYM_CLUSTERS: List[Tuple[str, ...]] = [
    ("vendor", "supplier", "provider", "merchant", "seller", "company"),
    ("customer", "client", "buyer", "purchaser", "account"),
    ("payment", "transaction", "transfer", "remittance", "disbursement"),
    ("amount", "total", "sum", "value", "price", "cost"),
    ("date", "time", "timestamp", "when", "period", "datetime"),
    ("invoice", "bill", "receipt", "statement"),
    ("name", "title", "label", "description"),
    ("email", "e-mail", "mail", "email_address", "contact"),
    ("phone", "telephone", "mobile", "cell", "number", "contact"),
    ("product", "item", "goods", "sku", "article"),
]

# Header keywords that mark a column as summable.
VALUE_KEYWORDS: List[str] = [
    "amount", "total", "sum", "price", "value", "payment", "sales", "revenue",
    "จำนวน", "เงิน", "การชำระ", "ยอดขาย", "รายได้", "ยอดรวม",
    "importe", "monto", "ventas", "montant", "ventes", "betrag", "umsatz", "valor", "vendas",
]

AGGREGATION_TRIGGERS: Dict[str, List[str]] = {
    "sum": ["total", "sum", "รวม", "ยอดรวม", "suma", "somme", "summe", "gesamt", "soma"],
    "count": ["count", "how many", "number of", "กี่", "นับ", "cuántos", "cuántas", "contar", "combien",
              "anzahl", "wie viele", "quantos", "quantas"],
    "average": ["average", "avg", "mean", "เฉลี่ย", "promedio", "moyenne", "durchschnitt", "média", "media"],
    "min": ["min", "minimum", "lowest", "smallest", "ต่ำสุด", "น้อยสุด", "mínimo", "le plus bas"],
    "max": ["max", "maximum", "highest", "largest", "สูงสุด", "มากสุด", "máximo", "le plus haut", "höchste"],
}

FILTER_TRIGGERS: List[str] = [
    "over", "under", "greater", "less", "more than", "above", "below", "between", "after", "before",
    "last", "this", "where",
    "มากกว่า", "น้อยกว่า", "เกิน", "ต่ำกว่า", "ระหว่าง", "ตั้งแต่",
    "mayor", "menor", "más de", "menos de", "entre",
    "plus de", "moins de", "supérieur", "inférieur",
    "über", "unter", "zwischen", "mehr als", "weniger als",
    "maior", "acima", "abaixo",
]

LOOKUP_TRIGGERS: List[str] = [
    "by", "for", "find", "search", "lookup", "look up", "get", "show", "which", "who",
    "หา", "ค้นหา", "แสดง", "ของ",
    "buscar", "encontrar", "mostrar", "chercher", "trouver", "afficher",
    "finden", "suche", "zeige", "procurar",
]

_ARTICLES = r"(?:(?:the|a|an|each|every|el|la|los|las|cada|le|les|chaque|der|die|das|jeden|jede|o|os|as)\s+)*"
_TERM = r"([^\s,.;:?!()\"']+)"

# Ordered: the more specific phrasings come first.
KEY_CONCEPT_PATTERNS: List[re.Pattern] = [
    re.compile(r"(?<!\w)(?:grouped|group|broken\s+down|split|break\s+down)\s+by\s+" + _ARTICLES + _TERM, re.IGNORECASE),
    re.compile(r"(?<!\w)for\s+each\s+" + _TERM, re.IGNORECASE),
    re.compile(r"(?<!\w)(?:by|per)\s+" + _ARTICLES + _TERM, re.IGNORECASE),
    re.compile(r"(?<!\w)agrupad[oa]s?\s+por\s+" + _ARTICLES + _TERM, re.IGNORECASE),
    re.compile(r"(?<!\w)(?:para|pour)\s+(?:cada|chaque)\s+" + _TERM, re.IGNORECASE),
    re.compile(r"(?<!\w)(?:por|par)\s+" + _ARTICLES + _TERM, re.IGNORECASE),
    re.compile(r"(?<!\w)(?:pro|nach|je)\s+" + _ARTICLES + _TERM, re.IGNORECASE),
    re.compile(r"แยกตาม\s*" + _TERM),
    re.compile(r"แต่ละ\s*" + _TERM),
    re.compile(r"ตาม\s*" + _TERM),
]

STOPWORDS = {
    "the", "a", "an", "of", "and", "or", "for", "by", "per", "in", "on", "to", "with", "from", "all", "show",
    "list", "me", "my", "what", "which", "is", "are", "get", "find", "each", "every", "how", "many", "much",
    "el", "la", "los", "las", "de", "del", "y", "le", "les", "des", "et", "der", "die", "das", "und", "o", "e",
}


def _contains_phrase(text: str, phrase: str) -> bool:
    """Word-bounded match for delimited scripts, substring for Thai/CJK."""
    phrase = normalize_text(phrase)
    if not phrase:
        return False
    if dominant_script(phrase) in UNDELIMITED_SCRIPTS:
        return phrase in text
    return re.search(r"(?<!\w)" + re.escape(phrase) + r"s?(?!\w)", text) is not None


def contains_any(text: str, phrases: Sequence[str]) -> bool:
    lowered = normalize_text(text)
    return any(_contains_phrase(lowered, phrase) for phrase in phrases)


def detect_aggregations(text: str) -> List[str]:
    lowered = normalize_text(text)
    found = []
    for kind, phrases in AGGREGATION_TRIGGERS.items():
        if any(_contains_phrase(lowered, phrase) for phrase in phrases):
            found.append(kind)
    return found


def canonical_concept(term: str) -> Optional[str]:
    """Dictionary concept whose variants include ``term`` (plural 's' tolerated)."""
    key = normalize_colname(term)
    if not key:
        return None
    candidates = {key}
    if key.endswith("s") and len(key) > 3:
        candidates.add(key[:-1])
    for concept, variants in CONCEPT_VARIANTS.items():
        if any(normalize_colname(v) in candidates for v in variants):
            return concept
    return None


def concept_variants(concept: str) -> List[str]:
    canonical = canonical_concept(concept)
    if canonical is None:
        return [concept]
    return list(CONCEPT_VARIANTS[canonical])


def concepts_in_text(text: str) -> List[str]:
    """Dictionary concepts mentioned in ``text``, in dictionary order."""
    lowered = normalize_text(text)
    return [
        concept
        for concept, variants in CONCEPT_VARIANTS.items()
        if any(_contains_phrase(lowered, variant) for variant in variants)
    ]


def synonyms_for(concept: str) -> List[str]:
    """Every other member of the clusters containing ``concept``."""
    key = normalize_colname(concept)
    found: List[str] = []
    for cluster in SYNONYM_CLUSTERS:
        normalized = [normalize_colname(member) for member in cluster]
        if key not in normalized:
            continue
        for member, norm in zip(cluster, normalized):
            if norm != key and member not in found:
                found.append(member)
    return found


def extract_key_concept(text: str) -> Optional[str]:
    """
    The grouping term of queries such as 'total by vendor', 'sales per region',
    'ยอดขายแยกตามลูกค้า'. Dictionary terms are returned in canonical form.
    """
    for pattern in KEY_CONCEPT_PATTERNS:
        match = pattern.search(text or "")
        if not match:
            continue
        term = match.group(1).strip().lower()
        if not term or term in STOPWORDS:
            continue
        return canonical_concept(term) or term
    return None
