# -*- coding: utf-8 -*-
"""ETL — Pydantic models for the aggregate, provenance and the manifest."""

from __future__ import annotations

from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

UpdateAction = Literal["CHANGE", "ADD", "DELETE"]


class NutrientMeta(BaseModel):
    id: str
    code: Optional[str] = None
    symbol: Optional[str] = None
    unit: Optional[str] = None
    name: Optional[str] = None
    tag: Optional[str] = None
    decimals: Optional[int] = None


class NutrientValue(BaseModel):
    tag: Optional[str] = None
    value: Optional[float] = None
    unit: Optional[str] = None
    decimals: Optional[int] = None
    provenance: Dict[str, Optional[str]] = Field(default_factory=dict)


class TagLookup(BaseModel):
    id: str
    value: Optional[float] = None
    unit: Optional[str] = None


class Measure(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    measure_id: str = Field(..., alias="MeasureID")
    conversion_factor_value: Optional[float] = Field(None, alias="ConversionFactorValue")
    date_of_entry: Optional[str] = Field(None, alias="ConvFactorDateOfEntry")


class ProvenanceEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_file: str = Field(..., alias="sourceFile")
    action: UpdateAction
    table: str
    keys: Dict[str, str] = Field(default_factory=dict)
    timestamp: str


class DerivedField(BaseModel):
    value: Optional[float] = None
    formula: str
    inputs: Dict[str, Optional[float]] = Field(default_factory=dict)


class FoodState(BaseModel):
    """One aggregate record, keyed by FoodID."""

    food_id: str
    food_code: Optional[str] = None
    food_description: Optional[str] = None
    food_description_f: Optional[str] = None
    food_group_id: Optional[str] = None
    food_source_id: Optional[str] = None
    nutrients_by_id: Dict[str, NutrientValue] = Field(default_factory=dict)
    # A tag maps to one nutrient id, or to a list once a second id carries it.
    tag_index: Dict[str, Union[str, List[str]]] = Field(default_factory=dict)
    nutrients_by_tag: Dict[str, TagLookup] = Field(default_factory=dict)
    measures: List[Measure] = Field(default_factory=list)
    derived: Dict[str, DerivedField] = Field(default_factory=dict)
    provenance: List[ProvenanceEvent] = Field(default_factory=list)


# ---- shard / manifest wire format ----


class AlternateEncoding(BaseModel):
    file: str
    bytes: int
    sha256: str
    compression: str


class ShardDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file: str
    record_count: int = Field(..., alias="count")
    compressed_bytes: int = Field(..., alias="bytes")
    uncompressed_bytes: int = Field(..., alias="uncompressedBytes")
    checksum: str = Field(..., alias="sha256")
    compression: str = "none"
    first_key: Optional[str] = Field(None, alias="firstFoodID")
    last_key: Optional[str] = Field(None, alias="lastFoodID")
    min_key: Optional[int] = Field(None, alias="minFoodID")
    max_key: Optional[int] = Field(None, alias="maxFoodID")
    alternate_encodings: List[AlternateEncoding] = Field(default_factory=list, alias="alternates")


class ArtifactRef(BaseModel):
    file: str
    count: int
    bytes: int
    sha256: str
    path: Optional[str] = None


class Manifest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: str = Field("1.0", alias="schemaVersion")
    version: str
    generated_at: str = Field(..., alias="generatedAt")
    sharding_key: str = Field("FoodID_range", alias="shardingKey")
    shard_size_target: int = Field(..., alias="shardSizeTarget")
    max_shard_bytes: Optional[int] = Field(None, alias="maxShardBytes")
    compression_algorithms: List[str] = Field(default_factory=list, alias="compressionAlgorithms")
    primary_compression: str = Field("none", alias="primaryCompression")
    gzip_level: Optional[int] = Field(None, alias="gzipLevel")
    zstd_level: Optional[int] = Field(None, alias="zstdLevel")
    shards: List[ShardDescriptor] = Field(default_factory=list)
    total_records: int = Field(0, alias="totalRecords")
    total_bytes: int = Field(0, alias="totalBytes")
    provenance_ref: Optional[ArtifactRef] = Field(None, alias="provenance")
    empty_records_ref: Optional[ArtifactRef] = Field(None, alias="emptyRecords")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)
