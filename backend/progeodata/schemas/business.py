"""
Pydantic schemas at the external-source boundary.

`RawBusinessPayload` is the validated shape of one record returned by a
source fetch. Anything the source sends that we do not model explicitly is
kept verbatim in `extra` and lands in RawBusinessRecord.raw_data.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any


class RawBusinessPayload(BaseModel):
    """Single business record from an external source"""
    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)
    
    source_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    source_url: Optional[str] = None
    category: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    geocode_confidence: Optional[float] = Field(None, ge=0, le=1)
    
    @field_validator('source_id', mode='before')
    @classmethod
    def coerce_source_id(cls, v):
        # Licensing boards hand out numeric ids
        if isinstance(v, int):
            return str(v)
        return v
    
    @field_validator('state')
    @classmethod
    def normalize_state(cls, v):
        if v is None:
            return v
        v = v.strip().upper()
        if not v:
            return None
        return v
    
    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if not v:
            return None
        if '@' not in v or v.startswith('@') or v.endswith('@'):
            raise ValueError('email must contain a local part and a domain')
        return v.lower()
    
    @field_validator('website', 'facebook_url', 'instagram_url', 'phone', 'address', 'category', mode='before')
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v
    
    @property
    def extra(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class PartialEnrichment(BaseModel):
    """What one enrichment provider learned about a business"""
    provider: str
    quality: float = Field(..., gt=0, le=1)
    owner_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None
    categories: List[str] = []
    review_count: Optional[int] = Field(None, ge=0)
    rating: Optional[float] = Field(None, ge=0, le=5)
    years_in_business: Optional[int] = Field(None, ge=0)
    
    def is_empty(self) -> bool:
        fields = self.model_dump(exclude={"provider", "quality"})
        return not any(v not in (None, [], "") for v in fields.values())


class FetchResult(BaseModel):
    """Records returned by one source fetch for one work item target"""
    records: List[Dict[str, Any]] = []
    pages_fetched: int = 1
    source_metadata: Dict[str, Any] = {}
