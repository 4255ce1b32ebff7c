import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from companion import constants

EscalationEventType = Literal["worker_waiting", "worker_error", "group_ready_to_merge"]


class TmuxConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    session_prefix: str = constants.DEFAULT_SESSION_PREFIX
    agent_command: str = constants.DEFAULT_AGENT_COMMAND
    default_session: str = constants.DEFAULT_SESSION_PREFIX
    managed_env_var: str = constants.MANAGED_SESSION_ENV_VAR
    operation_timeout: float = Field(default=constants.TMUX_OPERATION_TIMEOUT_S, gt=0)
    settle_delay: float = Field(default=constants.SESSION_SETTLE_DELAY_S, ge=0)


class InjectorConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    post_text_delay: float = Field(default=constants.POST_TEXT_DELAY_S, ge=0)
    post_enter_delay: float = Field(default=constants.POST_ENTER_DELAY_S, ge=0)
    post_other_select_delay: float = Field(default=constants.POST_OTHER_SELECT_DELAY_S, ge=0)
    choice_key_delay: float = Field(default=constants.CHOICE_KEY_DELAY_S, ge=0)
    missing_session_retry_delay: float = Field(default=constants.MISSING_SESSION_RETRY_DELAY_S, ge=0)


class OrchestratorConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    git_enabled: bool = True
    branch_prefix: str = constants.WORKER_BRANCH_PREFIX
    cli_ready_timeout: float = Field(default=constants.CLI_READY_TIMEOUT_S, ge=0)
    cli_ready_poll_interval: float = Field(default=constants.CLI_READY_POLL_INTERVAL_S, gt=0)
    monitor_interval: float = Field(default=constants.MONITOR_INTERVAL_S, gt=0)
    base_branches: List[str] = Field(default_factory=lambda: list(constants.BASE_BRANCH_CANDIDATES))
    state_path: Optional[str] = None

    @field_validator("branch_prefix")
    @classmethod
    def validate_branch_prefix(cls, v: str) -> str:
        if not v or v.startswith("/") or " " in v:
            raise ValueError(f"Invalid branch prefix: {v!r}")
        return v

    @field_validator("base_branches")
    @classmethod
    def validate_base_branches(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("base_branches must name at least one branch")
        return v


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    host: str = constants.DEFAULT_SERVER_HOST
    port: int = Field(default=constants.DEFAULT_SERVER_PORT, ge=1, le=65535)
    token: Optional[str] = None


class QuietHoursConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v: str) -> str:
        match = re.match(r"^(\d{2}):(\d{2})$", v)
        if not match:
            raise ValueError(f"Invalid time format: {v}. Expected format: HH:MM (e.g., '09:00', '14:30')")
        hour, minute = int(match.group(1)), int(match.group(2))
        if not (0 <= hour <= 23) or not (0 <= minute <= 59):
            raise ValueError(f"Invalid time: {v}")
        return v


class EscalationConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    events: List[EscalationEventType] = Field(
        default_factory=lambda: ["worker_waiting", "worker_error", "group_ready_to_merge"]
    )
    muted_sessions: List[str] = []
    rate_limit_seconds: float = Field(default=0, ge=0)
    push_delay_seconds: float = Field(default=60, ge=0)
    quiet_hours: QuietHoursConfig = QuietHoursConfig()


class CompanionConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    tmux: TmuxConfig = TmuxConfig()
    injector: InjectorConfig = InjectorConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    server: ServerConfig = ServerConfig()
    escalation: EscalationConfig = EscalationConfig()
