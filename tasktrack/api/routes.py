from __future__ import annotations

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from tasktrack.api.authentication import IdentityContext, get_principal
from tasktrack.api.schemas import (
    AuthTokenResponse,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TaskCreateRequest,
    TaskListResponse,
    TaskMutationResponse,
    TaskResponse,
    TaskUpdateRequest,
    VerifyEmailRequest,
)
from tasktrack.service.auth import AuthResult
from tasktrack.service.runtime import get_runtime
from tasktrack.storage.models import Task

router = APIRouter()


def _token_response(result: AuthResult) -> AuthTokenResponse:
    return AuthTokenResponse.build(
        result.access_token, result.refresh_token, result.identity, result.expires_at
    )


def _task_list(tasks: List[Task], *, empty_message: str = "No tasks found") -> TaskListResponse:
    count = len(tasks)
    message = empty_message if count == 0 else f"Retrieved {count} task{'s' if count != 1 else ''}"
    return TaskListResponse(
        message=message,
        tasks=[TaskResponse.from_task(t) for t in tasks],
        total_tasks=count,
    )


# auth
@router.post("/auth/register", response_model=MessageResponse, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and mail a six-digit verification code.

    Raises:
        409: If the email or handle is already taken
        500: If the verification mail could not be sent (nothing is kept)
    """
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.auth.register,
        body.email,
        body.handle,
        body.password,
        body.first_name,
        body.last_name,
    )
    hours = runtime.settings.verification_code_ttl_hours
    return MessageResponse(
        message=(
            "Account created successfully. Check your email for a 6-digit verification "
            f"code to activate your account. The code expires in {hours} hours."
        )
    )


@router.post("/auth/login", response_model=AuthTokenResponse, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Password correct but email not verified
        423: Account locked after repeated failures
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    return _token_response(result)


@router.post("/auth/forgot-password", response_model=MessageResponse, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.forgot_password, body.email)
    return MessageResponse(
        message="A 6-digit password reset code has been sent to your email."
    )


@router.post("/auth/reset-password", response_model=MessageResponse, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.reset_password, body.code, body.new_password)
    return MessageResponse(
        message="Your password has been reset. You can now log in with your new password."
    )


@router.post("/auth/verify-email", response_model=MessageResponse, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.verify_email, body.code)
    return MessageResponse(message="Your email has been verified. You can now log in.")


@router.post("/auth/resend-verification", response_model=MessageResponse, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.resend_verification, body.email)
    return MessageResponse(message="A new 6-digit verification code has been sent to your email.")


@router.post("/auth/refresh-token", response_model=AuthTokenResponse, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest):
    """Rotate the refresh token; the submitted value stops working immediately."""
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.refresh_token, body.refresh_token)
    return _token_response(result)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.logout, body.refresh_token)
    return MessageResponse(message="Logged out successfully")


# tasks
@router.get("/tasks", response_model=TaskListResponse, tags=["tasks"])
async def list_tasks(
    search: Optional[str] = Query(default=None, max_length=200),
    completed: Optional[bool] = Query(default=None),
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    tasks = await asyncio.to_thread(
        runtime.tasks.list_tasks, principal.user_id, completed=completed, search=search
    )
    return _task_list(tasks, empty_message="No tasks found. Ready to add your first task?")


@router.get("/tasks/search", response_model=TaskListResponse, tags=["tasks"])
async def search_tasks(
    query: str = Query(..., min_length=1, max_length=200),
    completed: Optional[bool] = Query(default=None),
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    tasks = await asyncio.to_thread(
        runtime.tasks.list_tasks, principal.user_id, completed=completed, search=query
    )
    return _task_list(tasks, empty_message=f"No tasks match '{query}'")


@router.get("/tasks/filter", response_model=TaskListResponse, tags=["tasks"])
async def filter_tasks(
    completed: bool = Query(...),
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    tasks = await asyncio.to_thread(
        runtime.tasks.list_tasks, principal.user_id, completed=completed
    )
    state = "completed" if completed else "pending"
    return _task_list(tasks, empty_message=f"No {state} tasks")


@router.post("/tasks", response_model=TaskMutationResponse, status_code=201, tags=["tasks"])
async def create_task(
    body: TaskCreateRequest,
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    task = await asyncio.to_thread(
        runtime.tasks.create_task, principal.user_id, body.title, body.description
    )
    return TaskMutationResponse(
        message=f"Task '{task.title}' created", task=TaskResponse.from_task(task)
    )


@router.get("/tasks/{task_id}", response_model=TaskMutationResponse, tags=["tasks"])
async def get_task(
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    task = await asyncio.to_thread(runtime.tasks.get_task, principal.user_id, task_id)
    return TaskMutationResponse(message="Task retrieved", task=TaskResponse.from_task(task))


@router.put("/tasks/{task_id}", response_model=TaskMutationResponse, tags=["tasks"])
async def update_task(
    body: TaskUpdateRequest,
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    changes = {"title": body.title, "completed": body.completed}
    # An explicit null clears the description; omitting it leaves it alone.
    if "description" in body.model_fields_set:
        changes["description"] = body.description
    task = await asyncio.to_thread(
        lambda: runtime.tasks.update_task(principal.user_id, task_id, **changes)
    )
    return TaskMutationResponse(
        message=f"Task '{task.title}' updated", task=TaskResponse.from_task(task)
    )


@router.patch(
    "/tasks/{task_id}/toggle-completion", response_model=TaskMutationResponse, tags=["tasks"]
)
async def toggle_task_completion(
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    task = await asyncio.to_thread(
        runtime.tasks.toggle_completion, principal.user_id, task_id
    )
    state = "completed" if task.completed else "pending"
    return TaskMutationResponse(
        message=f"Task '{task.title}' marked as {state}", task=TaskResponse.from_task(task)
    )


@router.delete("/tasks/{task_id}", response_model=MessageResponse, tags=["tasks"])
async def delete_task(
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.tasks.delete_task, principal.user_id, task_id)
    return MessageResponse(message="Task deleted")


# profile
@router.get("/profile", response_model=ProfileResponse, tags=["profile"])
async def get_profile(principal: IdentityContext = Depends(get_principal)):
    runtime = get_runtime()
    identity = await asyncio.to_thread(runtime.profile.get_profile, principal.user_id)
    return ProfileResponse.from_identity(identity)


@router.put("/profile", response_model=ProfileResponse, tags=["profile"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: IdentityContext = Depends(get_principal),
):
    runtime = get_runtime()
    identity = await asyncio.to_thread(
        lambda: runtime.profile.update_profile(
            principal.user_id,
            handle=body.handle,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    )
    return ProfileResponse.from_identity(identity)


@router.put("/profile/password", response_model=MessageResponse, tags=["profile"])
async def change_password(
    body: PasswordChangeRequest,
    principal: IdentityContext = Depends(get_principal),
):
    """Replace the password; the stored refresh token is revoked as well."""
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.profile.change_password,
        principal.user_id,
        body.current_password,
        body.new_password,
    )
    return MessageResponse(message="Password changed. Please log in again.")


@router.delete("/profile", response_model=MessageResponse, tags=["profile"])
async def delete_profile(principal: IdentityContext = Depends(get_principal)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.profile.delete_account, principal.user_id)
    return MessageResponse(message="Account deleted")
