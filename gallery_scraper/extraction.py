from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .utils import ExtractionError

logger = logging.getLogger(__name__)

# Storefront detail page -> plain JSON. Selector choices are site specific and kept in one place.
DETAILS_JS = r"""
() => {
  const ws = (v) => (v || '').replace(/\s+/g, ' ').trim();
  const stripSuffix = (v) => v.replace(/\s+[-–—]\s*Webflow.*$/i, '').replace(/\s+\|\s*Webflow.*$/i, '').trim();
  const placeholder = (v) => {
    const l = v.toLowerCase();
    return !v || l === 'customize this template' || l === 'preview in webflow' || l === 'get this template';
  };
  const pickName = () => {
    const c = [
      document.querySelector('meta[property="og:title"]')?.getAttribute('content'),
      document.querySelector('meta[name="twitter:title"]')?.getAttribute('content'),
      document.querySelector('.product-hero_heading')?.textContent,
      document.querySelector('.product-hero_title')?.textContent,
      document.querySelector('.product-hero h1')?.textContent,
      document.querySelector('h1')?.textContent,
      document.title,
    ];
    for (const x of c) { const s = stripSuffix(ws(x)); if (s && !placeholder(s)) return s; }
    return '';
  };
  const texts = (sel, opts = {}) => {
    const out = [];
    document.querySelectorAll(sel).forEach(el => {
      if (opts.skipButtons && String(el.className || '').includes('button')) return;
      const t = el.textContent?.trim();
      if (t && !out.includes(t) && t.toLowerCase() !== 'browse all') out.push(t);
    });
    return out;
  };

  let authorId = null, authorName = null, authorAvatar = null;
  const authorEl = document.querySelector('a[href*="/designers/"]');
  if (authorEl) {
    const href = authorEl.getAttribute('href') || '';
    authorId = href.split('/designers/')[1]?.split('/')[0] || null;
    authorName = authorEl.querySelector('.designer-preview_name-wrapper')?.textContent?.trim()
      || authorEl.querySelector('div')?.textContent?.trim() || null;
    authorAvatar = authorEl.querySelector('img')?.getAttribute('src') || null;
  }

  const features = texts('.product-feature-text, .feature-item');
  const lowered = features.map(f => f.toLowerCase());

  let publishRaw = null;
  for (const el of document.querySelectorAll('[class*="publish"], time')) {
    const t = el.textContent?.trim();
    if (t && /\w{3}\s+\d{1,2},?\s+\d{4}/.test(t)) { publishRaw = t; break; }
  }

  return {
    name: pickName(),
    authorId, authorName, authorAvatar,
    livePreviewUrl: document.querySelector('a[href*=".webflow.io"]')?.href || '',
    designerPreviewUrl: document.querySelector('a[href*="preview.webflow.com"]')?.href || '',
    price: (document.querySelector('.product-hero_price') || document.querySelector('[class*="price"]'))?.textContent?.trim() || 'Free',
    shortDescription: (document.querySelector('.product-hero_description') || document.querySelector('[class*="description"]'))?.textContent?.trim() || '',
    longDescription: (document.querySelector('.product-details_content') || document.querySelector('[class*="details"]'))?.innerHTML || '',
    primaryCategory: texts('a[href*="/templates/category/"]', { skipButtons: true }),
    gallerySubcategories: texts('a[href*="/templates/subcategory/"]'),
    subcategories: texts('#subcategory .tag-list_link, .tag-list_link'),
    styles: texts('a[href*="/templates/style/"]'),
    features,
    isCms: lowered.some(f => f.includes('cms')),
    isEcommerce: lowered.some(f => f.includes('ecommerce') || f.includes('e-commerce')),
    publishDateRaw: publishRaw,
  };
}
"""

_MONTHS = {m: i for i, m in enumerate(
    ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), start=1
)}


def parse_publish_date(raw: Optional[str]) -> Optional[str]:
    """'Dec 24, 2025' -> '2025-12-24'."""
    if not raw:
        return None
    m = re.search(r"(\w{3})\w*\s+(\d{1,2}),?\s+(\d{4})", raw)
    if not m:
        return None
    month = _MONTHS.get(m.group(1).lower())
    if month is None:
        return None
    return f"{int(m.group(3)):04d}-{month:02d}-{int(m.group(2)):02d}"


@dataclass
class TemplateRecord:
    """Structured payload for one template; consumed once by the write buffer."""
    slug: str
    name: str
    storefront_url: str
    live_preview_url: str
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    author_avatar: Optional[str] = None
    designer_preview_url: Optional[str] = None
    price: Optional[str] = None
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    primary_category: List[str] = field(default_factory=list)
    gallery_subcategories: List[str] = field(default_factory=list)
    subcategories: List[str] = field(default_factory=list)
    styles: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)
    is_cms: bool = False
    is_ecommerce: bool = False
    is_featured: bool = False
    publish_date: Optional[str] = None
    screenshot_path: Optional[str] = None
    screenshot_url: Optional[str] = None
    is_alternate_homepage: bool = False
    alternate_homepage_path: Optional[str] = None

    @property
    def template_id(self) -> str:
        return f"wf_{self.slug}"

    def template_row(self, now: str) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "name": self.name or self.slug,
            "slug": self.slug,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "author_avatar": self.author_avatar,
            "storefront_url": self.storefront_url,
            "live_preview_url": self.live_preview_url,
            "designer_preview_url": self.designer_preview_url or None,
            "price": self.price or None,
            "short_description": self.short_description or None,
            "long_description": self.long_description or None,
            "primary_category": json.dumps(self.primary_category) if self.primary_category else None,
            "gallery_subcategories": json.dumps(self.gallery_subcategories) if self.gallery_subcategories else None,
            "screenshot_path": self.screenshot_path,
            "is_featured": int(self.is_featured),
            "is_cms": int(self.is_cms),
            "is_ecommerce": int(self.is_ecommerce),
            "screenshot_url": self.screenshot_url,
            "is_alternate_homepage": int(self.is_alternate_homepage),
            "alternate_homepage_path": self.alternate_homepage_path,
            "publish_date": self.publish_date,
            "scraped_at": now,
            "updated_at": now,
        }


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, str) and v.strip()]


def record_from_details(slug: str, storefront_url: str, data: Mapping[str, Any]) -> TemplateRecord:
    live = (data.get("livePreviewUrl") or "").strip()
    if not live:
        raise ExtractionError("No live preview URL found")
    return TemplateRecord(
        slug=slug,
        name=(data.get("name") or "").strip() or slug,
        storefront_url=storefront_url,
        live_preview_url=live,
        author_id=data.get("authorId") or None,
        author_name=data.get("authorName") or None,
        author_avatar=data.get("authorAvatar") or None,
        designer_preview_url=data.get("designerPreviewUrl") or None,
        price=data.get("price") or "Free",
        short_description=data.get("shortDescription") or None,
        long_description=data.get("longDescription") or None,
        primary_category=_str_list(data.get("primaryCategory")),
        gallery_subcategories=_str_list(data.get("gallerySubcategories")),
        subcategories=_str_list(data.get("subcategories")),
        styles=_str_list(data.get("styles")),
        features=_str_list(data.get("features")),
        is_cms=bool(data.get("isCms")),
        is_ecommerce=bool(data.get("isEcommerce")),
        publish_date=parse_publish_date(data.get("publishDateRaw")),
    )


async def extract_details(page: Any, slug: str, storefront_url: str) -> TemplateRecord:
    data = await page.evaluate(DETAILS_JS)
    if not isinstance(data, dict):
        raise ExtractionError(f"Detail script returned {type(data).__name__}")
    return record_from_details(slug, storefront_url, data)
