import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, JSON, Text, func

from meez_recipes.app.db.base import Base


class CacheSourceType(str, enum.Enum):
    URL = "url"
    RAW_TEXT = "raw_text"
    VIDEO = "video"


class ProcessedRecipeCache(Base):
    __tablename__ = "processed_recipes_cache"

    id = Column(Integer, primary_key=True, index=True)
    # Raw input as submitted; cache_key is the normalized identity
    url = Column(Text, nullable=False)
    cache_key = Column(Text, nullable=False, index=True)
    source_type = Column(Enum(CacheSourceType, native_enum=False), nullable=False)
    recipe_data = Column(JSON, nullable=False)
    embedding = Column(JSON, nullable=True)
    parent_recipe_id = Column(
        Integer, ForeignKey("processed_recipes_cache.id", ondelete="SET NULL"), nullable=True
    )
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    last_processed_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (Index("ix_processed_recipes_cache_key_created", "cache_key", "created_at"),)
