import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

import bcrypt
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from . import analytics, config, csv_export, database, models, schemas

logger = logging.getLogger(__name__)
logging.getLogger("workshop_votes").setLevel(config.LOG_LEVEL)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

app = FastAPI(title="Workshop Votes", version="0.2.0")

limiter = Limiter(key_func=get_remote_address, enabled=not config.TESTING)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

models.Base.metadata.create_all(bind=database.engine)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(
        plain_password.encode("utf-8"), hashed_password.encode("utf-8")
    )


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email).first()


def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(database.get_db)
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db.query(models.User).filter(models.User.id == int(user_id)).first()
    if user is None:
        raise credentials_exception
    return user


class ApiError(Exception):
    def __init__(self, code: str, message: str, status: int = 400):
        self.code = code
        self.message = message
        self.status = status


TITLE_MAP = {
    "email_exists": "Email already registered",
    "invalid_credentials": "Invalid credentials",
    "not_found": "Resource not found",
    "session_not_found": "Session not found",
    "player_not_found": "Player not found",
    "invalid_feature": "Invalid feature",
    "invalid_status": "Invalid session status",
    "session_closed": "Session closed",
    "voting_closed": "Voting closed",
    "points_exceeded": "Points budget exceeded",
    "invalid_vote_data": "Invalid vote data",
    "internal_error": "Internal server error",
}

STATUS_TO_TITLE = {
    401: "Unauthorized",
    403: "Forbidden",
    404: "Resource not found",
    422: "Validation error",
    429: "Too Many Requests",
}


def problem_response(
    status_code: int,
    code: str,
    title: str,
    detail: str,
    correlation_id: Optional[str] = None,
):
    # RFC 7807
    return JSONResponse(
        status_code=status_code,
        content={
            "type": f"{config.ERROR_TYPE_BASE}/{code}",
            "title": title,
            "status": status_code,
            "detail": detail,
            "correlation_id": correlation_id or str(uuid4()),
        },
    )


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    title = TITLE_MAP.get(exc.code, "Request error")
    return problem_response(exc.status, exc.code, title, exc.message)


@app.exception_handler(analytics.VoteValidationError)
async def vote_validation_handler(request: Request, exc: analytics.VoteValidationError):
    logger.warning(
        "Rejected vote data on %s: %s (feature=%s)",
        request.url.path,
        exc.message,
        exc.feature_id,
    )
    return problem_response(
        422, "invalid_vote_data", TITLE_MAP["invalid_vote_data"], exc.message
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    title = STATUS_TO_TITLE.get(exc.status_code, "HTTP error")
    detail = str(exc.detail) if exc.detail else title
    response = problem_response(
        exc.status_code, f"http_{exc.status_code}", title, detail
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    correlation_id = str(uuid4())
    logger.exception(
        "Unhandled error on %s %s correlation_id=%s",
        request.method,
        request.url.path,
        correlation_id,
    )
    return problem_response(
        500,
        "internal_error",
        TITLE_MAP["internal_error"],
        "Internal server error",
        correlation_id=correlation_id,
    )


def get_session_or_404(db: Session, session_id: str) -> models.WorkshopSession:
    workshop = (
        db.query(models.WorkshopSession)
        .filter(models.WorkshopSession.id == session_id)
        .first()
    )
    if not workshop:
        raise ApiError(
            code="session_not_found", message="Session not found", status=404
        )
    return workshop


def get_owned_session(
    session_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(database.get_db),
) -> models.WorkshopSession:
    workshop = get_session_or_404(db, session_id)
    if workshop.owner_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not your session")
    return workshop


def fetch_votes_with_context(
    db: Session, session_id: str
) -> list[schemas.VoteWithContext]:
    rows = (
        db.query(models.Vote, models.Player, models.Feature)
        .join(models.Player, models.Vote.player_id == models.Player.id)
        .join(models.Feature, models.Vote.feature_id == models.Feature.id)
        .filter(models.Vote.session_id == session_id)
        .order_by(models.Player.joined_at, models.Feature.position)
        .all()
    )
    return [
        schemas.VoteWithContext(
            feature_id=feature.id,
            feature_title=feature.title,
            feature_effort=feature.effort,
            feature_impact=feature.impact,
            player_id=player.id,
            player_name=player.name,
            player_role=player.role,
            points_allocated=vote.points_allocated,
        )
        for vote, player, feature in rows
    ]


def session_votes(db: Session, session_id: str) -> list[models.Vote]:
    return db.query(models.Vote).filter(models.Vote.session_id == session_id).all()


@app.get("/health")
def health():
    return {"status": "ok"}


# --- Аутентификация ---


@app.post("/users", response_model=schemas.UserOut)
def register_user(user: schemas.UserCreate, db: Session = Depends(database.get_db)):
    if get_user_by_email(db, user.email):
        raise ApiError(
            code="email_exists",
            message="Check your inbox if the address is confirmed",
            status=400,
        )
    new_user = models.User(
        email=user.email,
        full_name=user.full_name,
        hashed_password=get_password_hash(user.password),
        role="host",
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    return new_user


@app.post("/auth/login", response_model=schemas.Token)
def login_for_access_token(
    user: schemas.UserLogin, db: Session = Depends(database.get_db)
):
    db_user = get_user_by_email(db, user.email)
    if not db_user or not verify_password(user.password, db_user.hashed_password):
        raise ApiError(
            code="invalid_credentials", message="Invalid account data", status=401
        )
    access_token = create_access_token(
        data={"sub": str(db_user.id)},
        expires_delta=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/users/me", response_model=schemas.UserOut)
def read_users_me(current_user: models.User = Depends(get_current_user)):
    return current_user


@app.put("/users/me", response_model=schemas.UserOut)
def update_user_me(
    user_update: schemas.UserUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(database.get_db),
):
    current_user.full_name = user_update.full_name
    db.commit()
    db.refresh(current_user)
    return current_user


# --- Сессии ---


@app.post("/sessions", response_model=schemas.SessionOut)
def create_session(
    payload: schemas.SessionCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(database.get_db),
):
    workshop = models.WorkshopSession(
        owner_id=current_user.id,
        project_name=payload.project_name,
        title=payload.title,
        status="open",
    )
    for position, feature in enumerate(payload.features):
        workshop.features.append(
            models.Feature(
                position=position,
                title=feature.title,
                description=feature.description,
                effort=feature.effort,
                impact=feature.impact,
                reference_links=[link.model_dump() for link in feature.reference_links],
            )
        )
    db.add(workshop)
    db.commit()
    db.refresh(workshop)
    logger.info(
        "Session %s created by user %s with %d features",
        workshop.id,
        current_user.id,
        len(workshop.features),
    )
    return workshop


@app.get("/sessions", response_model=list[schemas.SessionSummary])
def list_sessions(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(database.get_db),
):
    return (
        db.query(models.WorkshopSession)
        .filter(models.WorkshopSession.owner_id == current_user.id)
        .order_by(models.WorkshopSession.created_at.desc())
        .all()
    )


@app.get("/sessions/{session_id}", response_model=schemas.SessionOut)
def get_session(session_id: str, db: Session = Depends(database.get_db)):
    return get_session_or_404(db, session_id)


@app.delete("/sessions/{session_id}")
def delete_session(
    workshop: models.WorkshopSession = Depends(get_owned_session),
    db: Session = Depends(database.get_db),
):
    session_id = workshop.id
    db.delete(workshop)
    db.commit()
    logger.info("Session %s deleted", session_id)
    return {"ok": True}


def _transition(workshop: models.WorkshopSession, expected: str, target: str):
    if workshop.status != expected:
        raise ApiError(
            code="invalid_status",
            message=f"Session must be '{expected}' to move to '{target}'",
            status=409,
        )
    workshop.status = target


@app.post("/sessions/{session_id}/start", response_model=schemas.SessionSummary)
def start_session(
    workshop: models.WorkshopSession = Depends(get_owned_session),
    db: Session = Depends(database.get_db),
):
    _transition(workshop, "open", "playing")
    db.commit()
    db.refresh(workshop)
    logger.info("Session %s started", workshop.id)
    return workshop


@app.post("/sessions/{session_id}/complete", response_model=schemas.SessionSummary)
def complete_session(
    workshop: models.WorkshopSession = Depends(get_owned_session),
    db: Session = Depends(database.get_db),
):
    _transition(workshop, "playing", "results")
    db.commit()
    db.refresh(workshop)
    logger.info("Session %s completed", workshop.id)
    return workshop


# --- Участники ---


@app.post("/sessions/{session_id}/join", response_model=schemas.PlayerOut)
@limiter.limit(config.JOIN_RATE_LIMIT)
def join_session(
    request: Request,
    session_id: str,
    payload: schemas.PlayerJoin,
    db: Session = Depends(database.get_db),
):
    workshop = get_session_or_404(db, session_id)
    if workshop.status == "results":
        raise ApiError(
            code="session_closed",
            message="This session has already finished",
            status=409,
        )
    player = models.Player(session_id=workshop.id, name=payload.name, role=payload.role)
    db.add(player)
    db.commit()
    db.refresh(player)
    logger.info(
        "Player %s joined session %s as %s",
        player.id,
        workshop.id,
        analytics.normalize_role(player.role),
    )
    return player


@app.get("/sessions/{session_id}/players", response_model=list[schemas.PlayerProgress])
def list_players(session_id: str, db: Session = Depends(database.get_db)):
    workshop = get_session_or_404(db, session_id)
    return analytics.summarize_player_progress(
        workshop.players, session_votes(db, workshop.id)
    )


# --- Голосование ---


@app.post("/sessions/{session_id}/vote", response_model=schemas.VoteSubmissionResult)
@limiter.limit(config.VOTE_RATE_LIMIT)
def submit_votes(
    request: Request,
    session_id: str,
    payload: schemas.VoteSubmission,
    db: Session = Depends(database.get_db),
):
    workshop = get_session_or_404(db, session_id)
    if workshop.status != "playing":
        raise ApiError(
            code="voting_closed",
            message="Voting is not currently active for this session",
            status=400,
        )

    player = (
        db.query(models.Player)
        .filter(
            models.Player.id == payload.player_id,
            models.Player.session_id == workshop.id,
        )
        .first()
    )
    if not player:
        raise ApiError(
            code="player_not_found",
            message="Player not found in this session",
            status=404,
        )

    valid_feature_ids = {feature.id for feature in workshop.features}
    if any(vote.feature_id not in valid_feature_ids for vote in payload.votes):
        raise ApiError(
            code="invalid_feature",
            message="One or more feature IDs are invalid",
            status=400,
        )

    remaining = analytics.calculate_remaining_points(
        config.TOTAL_POINTS, {vote.feature_id: vote.points for vote in payload.votes}
    )
    if remaining < 0:
        raise ApiError(
            code="points_exceeded",
            message=f"Total points cannot exceed {config.TOTAL_POINTS}",
            status=400,
        )

    # Повторная отправка заменяет прежние голоса участника
    db.query(models.Vote).filter(
        models.Vote.session_id == workshop.id,
        models.Vote.player_id == player.id,
    ).delete(synchronize_session=False)

    for vote in payload.votes:
        if vote.points > 0:
            db.add(
                models.Vote(
                    session_id=workshop.id,
                    player_id=player.id,
                    feature_id=vote.feature_id,
                    points_allocated=vote.points,
                    note=vote.note,
                )
            )
    db.flush()

    voters = {vote.player_id for vote in session_votes(db, workshop.id)}
    all_voted = bool(workshop.players) and all(
        p.id in voters for p in workshop.players
    )
    if all_voted:
        workshop.status = "results"
    db.commit()

    logger.info(
        "Player %s allocated %d points in session %s",
        player.id,
        config.TOTAL_POINTS - remaining,
        workshop.id,
    )
    if all_voted:
        logger.info("All players voted, session %s moved to results", workshop.id)
    return {"success": True, "all_voted": all_voted}


# --- Результаты ---


@app.get("/sessions/{session_id}/results", response_model=schemas.SessionResults)
def get_results(session_id: str, db: Session = Depends(database.get_db)):
    workshop = get_session_or_404(db, session_id)
    votes = session_votes(db, workshop.id)
    return schemas.SessionResults(
        session=schemas.SessionSummary.model_validate(workshop),
        results=analytics.aggregate_votes(workshop.features, votes),
        total_votes=len(votes),
    )


@app.get("/sessions/{session_id}/consensus", response_model=schemas.ConsensusMetrics)
def get_consensus(session_id: str, db: Session = Depends(database.get_db)):
    workshop = get_session_or_404(db, session_id)
    results = analytics.aggregate_votes(
        workshop.features, session_votes(db, workshop.id)
    )
    return analytics.calculate_consensus_metrics(results)


@app.get(
    "/sessions/{session_id}/voting-analysis",
    response_model=schemas.VotingAnalysisResponse,
)
def get_voting_analysis(session_id: str, db: Session = Depends(database.get_db)):
    workshop = get_session_or_404(db, session_id)
    return analytics.analyze_role_voting(fetch_votes_with_context(db, workshop.id))


@app.get(
    "/sessions/{session_id}/results-by-role",
    response_model=schemas.RoleFilteredResults,
)
def get_results_by_role(
    session_id: str,
    role: Optional[str] = None,
    db: Session = Depends(database.get_db),
):
    workshop = get_session_or_404(db, session_id)
    rows = fetch_votes_with_context(db, workshop.id)
    return {"results": analytics.aggregate_results_for_role(rows, role)}


@app.get("/sessions/{session_id}/results/csv")
def export_results(
    workshop: models.WorkshopSession = Depends(get_owned_session),
    db: Session = Depends(database.get_db),
):
    results = analytics.aggregate_votes(
        workshop.features, session_votes(db, workshop.id)
    )
    body = csv_export.results_report_csv(results)

    safe, warnings = csv_export.validate_csv_safety(body)
    if not safe:
        for warning in warnings:
            logger.warning("CSV export for session %s: %s", workshop.id, warning)

    filename = csv_export.report_filename(
        workshop.title or workshop.project_name or "session"
    )
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Content-Type-Options": "nosniff",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
