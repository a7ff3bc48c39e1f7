from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List


class Settings(BaseSettings):
    # Database
    database_url: str = Field(default="sqlite:///./casamatch.db", env="DATABASE_URL")

    # API
    api_host: str = Field(default="127.0.0.1", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")

    # Geometry
    earth_radius_km: float = Field(default=6371.0, env="EARTH_RADIUS_KM")
    default_search_radius_meters: float = Field(default=2000, env="DEFAULT_SEARCH_RADIUS_METERS")

    # Deduplication
    dedup_price_tolerance_percent: float = Field(default=2.0, env="DEDUP_PRICE_TOLERANCE_PERCENT")
    dedup_size_tolerance_sqm: float = Field(default=2.0, env="DEDUP_SIZE_TOLERANCE_SQM")
    dedup_address_similarity: int = Field(default=100, env="DEDUP_ADDRESS_SIMILARITY")  # 100 = exact

    # Matching slack (0 = strict bounds)
    match_price_tolerance_percent: float = Field(default=0.0, env="MATCH_PRICE_TOLERANCE_PERCENT")
    match_size_tolerance_percent: float = Field(default=0.0, env="MATCH_SIZE_TOLERANCE_PERCENT")

    # Classification
    private_seller_keywords: str = Field(
        default="privato,privata,proprietario,proprietaria,venditaprivata",
        env="PRIVATE_SELLER_KEYWORDS"
    )
    exclusivity_keywords: str = Field(default="esclusiva,esclusività,in esclusiva", env="EXCLUSIVITY_KEYWORDS")

    # Ingestion
    ingest_max_retries: int = Field(default=3, env="INGEST_MAX_RETRIES")

    # Batch re-matching
    rematch_interval_minutes: int = Field(default=30, env="REMATCH_INTERVAL_MINUTES")
    rematch_max_workers: int = Field(default=4, env="REMATCH_MAX_WORKERS")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_file: str = Field(default="casamatch.log", env="LOG_FILE")

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_private_seller_keywords_list(self) -> List[str]:
        """Get private seller keywords as list"""
        return [k.strip().lower() for k in self.private_seller_keywords.split(',') if k.strip()]

    def get_exclusivity_keywords_list(self) -> List[str]:
        """Get exclusivity keywords as list"""
        return [k.strip().lower() for k in self.exclusivity_keywords.split(',') if k.strip()]


# Global settings instance
settings = Settings()
