"""
web/routes.py -- Jinja2 template routes for the csrfguard web UI.

Server-rendered forms are the embedded-field transport's home: the page
template calls csrf_input(request), which renders the hidden input from the
token CSRFMiddleware placed on request.state before the handler ran.

Routes:
  GET  /form    -- form page with hidden csrf_token field
  POST /submit  -- handle the form (token already validated by middleware)
"""

import logging
from pathlib import Path

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from markupsafe import Markup

from csrf.transport import CONTEXT_KEY

logger = logging.getLogger("csrfguard.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()


def csrf_input(request: Request) -> Markup:
    """Render the hidden CSRF field for the current request, or nothing.

    hidden_field() already escapes the value, so the result is marked safe for
    Jinja2 autoescaping.
    """
    token = getattr(request.state, CONTEXT_KEY, None)
    if token is None:
        return Markup("")
    return Markup(request.app.state.csrf.binder.hidden_field(token))


# Exposed as a Jinja2 global so every template can call it without each
# handler adding it to the context.
templates.env.globals["csrf_input"] = csrf_input


@router.get("/form", response_class=HTMLResponse)
def form_page(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "form.html", {"message": None})


@router.post("/submit", response_class=HTMLResponse)
def submit(request: Request, message: str = Form(..., max_length=1000)) -> HTMLResponse:
    """Render the form again with the submitted message.

    Under the one-time policy the middleware has already put a fresh token on
    request.state, so the re-rendered form is immediately usable.
    """
    logger.info("Form submitted (%d chars)", len(message))
    return templates.TemplateResponse(request, "form.html", {"message": message})
