"""Configuration schema using Pydantic."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class GpioConfig(BaseModel):
    """Gateway behaviour for pin commands."""

    default_device_id: str = "esp32-s3-1"
    command_timeout_ms: int = 5000
    reset_timeout_ms: int = 5000  # auto-reset follow-up write
    history_limit: int = 100
    history_preview: int = 10  # entries returned by GET /pin/:pin


class MQTTConfig(BaseModel):
    """MQTT broker connection used to reach devices."""

    host: str = "127.0.0.1"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = ""  # random dashboard_xxxxxxxx when empty
    keepalive_seconds: int = 60
    reconnect_min_seconds: int = 1
    reconnect_max_seconds: int = 30
    qos: int = 1
    command_topic_template: str = "device/{device_id}/command/{command}"
    response_topic: str = "device/+/response"
    status_topic: str = "device/+/status"
    tls_enabled: bool = False


class ControlApiConfig(BaseModel):
    """HTTP control API settings."""

    host: str = "127.0.0.1"
    port: int = 18800
    base_path: str = "/api/gpio"
    max_body_bytes: int = 256 * 1024
    auth_enabled: bool = False
    auth_token: str = ""
    rate_limit_enabled: bool = True
    rate_limit_rpm: int = 600
    rate_limit_burst: int = 120


class Config(BaseSettings):
    """Root configuration for pinlink."""

    adapter: str = "mqtt"  # mqtt | mock
    gpio: GpioConfig = Field(default_factory=GpioConfig)
    mqtt: MQTTConfig = Field(default_factory=MQTTConfig)
    control: ControlApiConfig = Field(default_factory=ControlApiConfig)

    model_config = ConfigDict(
        env_prefix="PINLINK_",
        env_nested_delimiter="__",
    )
