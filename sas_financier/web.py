"""HTTP layer: FastAPI app factory, session guards and the HTML pages."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlsplit

from fastapi import APIRouter, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.middleware.sessions import SessionMiddleware

from sas_financier.aggregation import aggregate
from sas_financier.auth import Accounts, User
from sas_financier.community import Community
from sas_financier.config import AppConfig
from sas_financier.db import ChangeNotifier, Database
from sas_financier.exceptions import (
    AssoError,
    EmptyReportError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    StoreError,
    ValidationError,
)
from sas_financier.filiere import ANNEE_PREPARATOIRE, LEVELS, PreparatoryYear, TRACKS
from sas_financier.logging import get_logger, setup_logging
from sas_financier.members import SEXES, MemberRegistry, Membre, MembreForm
from sas_financier.reports import (
    ANNUEL,
    MENSUEL,
    Period,
    build_report,
    csv_filename,
    recent_months,
    recent_years,
    to_csv,
    to_printable_html,
    to_xlsx,
    xlsx_filename,
)
from sas_financier.roles import ANONYMOUS, Role, RoleContext, parse_role, set_role
from sas_financier.settings import AppSettings
from sas_financier.storage import MAX_UPLOAD_BYTES, ObjectStore
from sas_financier.transactions import (
    CATEGORIES,
    ApprovalWorkflow,
    Receipt,
    Statut,
    Transaction,
    TransactionDraft,
    TransactionStore,
    TransactionType,
)
from sas_financier.ui import (
    avatar,
    confirm_button,
    error_card,
    esc,
    fmt,
    options,
    render,
    role_badge,
    statut_badge,
    table,
    type_badge,
)

logger = get_logger(__name__)

router = APIRouter()


# ============================================================
# Services
# ============================================================
@dataclass
class Services:
    config: AppConfig
    database: Database
    objects: ObjectStore
    members: MemberRegistry
    accounts: Accounts
    store: TransactionStore
    workflow: ApprovalWorkflow
    settings: AppSettings
    community: Community

    def start(self) -> None:
        self.database.init(self.config.default_app_name)
        self.accounts.ensure_bootstrap_admin(
            self.config.bootstrap_email, self.config.bootstrap_password
        )
        self.settings.reload()

    def stop(self) -> None:
        self.settings.close()


def build_services(config: AppConfig) -> Services:
    database = Database(config.db_path, ChangeNotifier())
    objects = ObjectStore(config.upload_dir, base_url="/files")
    members = MemberRegistry(database)
    store = TransactionStore(database)
    return Services(
        config=config,
        database=database,
        objects=objects,
        members=members,
        accounts=Accounts(database, members, objects, config.min_password_length),
        store=store,
        workflow=ApprovalWorkflow(store, objects),
        settings=AppSettings(database, config.default_app_name, objects),
        community=Community(database),
    )


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or AppConfig.from_env()
    services = build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.start()
        yield
        services.stop()

    app = FastAPI(title=config.default_app_name, lifespan=lifespan)
    app.state.services = services
    app.add_middleware(SessionMiddleware, secret_key=config.secret_key, same_site="lax")
    app.add_exception_handler(AssoError, handle_asso_error)

    config.upload_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/files", StaticFiles(directory=config.upload_dir), name="files")
    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    config = AppConfig.from_env()
    setup_logging(config.log_level, config.log_format)
    uvicorn.run(
        create_app(config),
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "8000")),
        log_config=None,
    )


# ============================================================
# Request helpers
# ============================================================
@dataclass(frozen=True)
class Visitor:
    user: Optional[User]
    actor: RoleContext


def services_of(request: Request) -> Services:
    return request.app.state.services


def current_visitor(request: Request) -> Visitor:
    """Re-resolve the session user and their role on every request."""
    svc = services_of(request)
    user_id = request.session.get("user_id")
    user = svc.accounts.get_user(user_id) if isinstance(user_id, int) else None
    if user is None:
        if user_id is not None:
            request.session.pop("user_id", None)
        return Visitor(user=None, actor=ANONYMOUS)
    return Visitor(user=user, actor=svc.accounts.role_of(user.id))


def flash(request: Request, message: str) -> None:
    request.session["flash"] = message


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=303)


def safe_next(value: Optional[str], default: str) -> str:
    if not value:
        return default
    parts = urlsplit(value)
    path = parts.path
    if not path.startswith("/") or path.startswith("//"):
        return default
    return path + (f"?{parts.query}" if parts.query else "")


def page(
    request: Request, visitor: Visitor, title: str, body: str, status_code: int = 200
) -> HTMLResponse:
    svc = services_of(request)
    return render(
        title,
        body,
        branding=svc.settings.current,
        user=visitor.user,
        role=visitor.actor.role,
        is_admin=visitor.actor.is_admin,
        path=request.url.path,
        flash=request.session.pop("flash", None),
        status_code=status_code,
    )


def read_upload(upload: Optional[UploadFile]) -> Optional[Tuple[str, bytes]]:
    if upload is None or not upload.filename:
        return None
    data = upload.file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError(f"Fichier trop volumineux ({MAX_UPLOAD_BYTES // (1024 * 1024)} Mo maximum)")
    return upload.filename, data


# ============================================================
# Guards
# ============================================================
def denied(request: Request, visitor: Visitor) -> HTMLResponse:
    body = error_card("Accès refusé", "Vous n'avez pas les droits nécessaires pour cette page.", "/dashboard")
    return page(request, visitor, "Accès refusé", body, status_code=403)


def require_login(request: Request) -> Tuple[Optional[Response], Visitor]:
    visitor = current_visitor(request)
    if visitor.user is None:
        return redirect("/auth"), visitor
    return None, visitor


def require_admin(request: Request) -> Tuple[Optional[Response], Visitor]:
    gate, visitor = require_login(request)
    if gate:
        return gate, visitor
    if not visitor.actor.is_admin:
        logger.warning("User %s refused admin page %s", visitor.actor.user_id, request.url.path)
        return denied(request, visitor), visitor
    return None, visitor


ERROR_STATUS = [
    (PermissionDenied, 403, "Accès refusé"),
    (NotFoundError, 404, "Introuvable"),
    (InvalidTransitionError, 409, "Action impossible"),
    (EmptyReportError, 400, "Rapport vide"),
    (ValidationError, 400, "Erreur"),
    (StoreError, 500, "Erreur"),
]


def handle_asso_error(request: Request, exc: AssoError) -> HTMLResponse:
    status_code, title = 400, "Erreur"
    for cls, code, label in ERROR_STATUS:
        if isinstance(exc, cls):
            status_code, title = code, label
            break
    try:
        visitor = current_visitor(request)
    except StoreError:
        visitor = Visitor(user=None, actor=ANONYMOUS)
    back = safe_next(request.headers.get("referer"), "/dashboard" if visitor.user else "/")
    body = error_card(title, str(exc) or "Une erreur est survenue.", back)
    return page(request, visitor, title, body, status_code=status_code)


@router.get("/favicon.ico")
def favicon():
    return Response(status_code=204)


# ============================================================
# Landing + auth
# ============================================================
@router.get("/", response_class=HTMLResponse)
def landing(request: Request):
    visitor = current_visitor(request)
    if visitor.user:
        return redirect("/dashboard")
    app_name = services_of(request).settings.current.app_name
    body = f"""
    <div class="card">
      <h1>Bienvenue sur {esc(app_name)}</h1>
      <div class="muted">Gestion financière de l'association : cotisations, dépenses, approbations et rapports.</div>
      <div style="height:14px"></div>
      <div class="kpis three">
        <div class="kpi"><div class="t">Transactions</div><div class="v">Entrées &amp; sorties</div></div>
        <div class="kpi"><div class="t">Validation</div><div class="v">Approbation par le bureau</div></div>
        <div class="kpi"><div class="t">Rapports</div><div class="v">CSV, Excel, PDF</div></div>
      </div>
      <div style="height:14px"></div>
      <a class="btn primary" href="/auth">Se connecter / S'inscrire</a>
    </div>
    """
    return page(request, visitor, "Accueil", body)


@router.get("/auth", response_class=HTMLResponse)
def auth_page(request: Request):
    visitor = current_visitor(request)
    if visitor.user:
        return redirect("/dashboard")
    body = """
    <div class="row">
      <div class="col card">
        <h2>Connexion</h2>
        <form method="post" action="/auth/signin">
          <label>Email</label>
          <input name="email" type="email" required />
          <label>Mot de passe</label>
          <input name="password" type="password" required />
          <div style="height:12px"></div>
          <button class="btn primary" type="submit">Se connecter</button>
        </form>
      </div>

      <div class="col card">
        <h2>Inscription</h2>
        <div class="muted">Réservée aux membres déjà enregistrés par le bureau (même nom et prénom).</div>
        <form method="post" action="/auth/signup">
          <div class="row">
            <div class="col"><label>Nom</label><input name="nom" required /></div>
            <div class="col"><label>Prénom</label><input name="prenom" required /></div>
          </div>
          <label>Email</label>
          <input name="email" type="email" required />
          <div class="row">
            <div class="col"><label>Mot de passe</label><input name="password" type="password" required /></div>
            <div class="col"><label>Confirmer</label><input name="confirm_password" type="password" required /></div>
          </div>
          <div style="height:12px"></div>
          <button class="btn primary" type="submit">Créer mon compte</button>
        </form>
      </div>
    </div>
    """
    return page(request, visitor, "Connexion", body)


@router.post("/auth/signin")
def signin(request: Request, email: str = Form(""), password: str = Form("")):
    user = services_of(request).accounts.sign_in(email, password)
    request.session.clear()
    request.session["user_id"] = user.id
    logger.info("User %s signed in", user.id)
    return redirect("/dashboard")


@router.post("/auth/signup")
def signup(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    nom: str = Form(""),
    prenom: str = Form(""),
):
    services_of(request).accounts.sign_up(email, password, confirm_password, nom, prenom)
    flash(request, "Inscription réussie ! Vous pouvez maintenant vous connecter.")
    return redirect("/auth")


@router.get("/logout")
def logout(request: Request):
    request.session.clear()
    return redirect("/")


# ============================================================
# Dashboard
# ============================================================
def transaction_rows(
    txs: List[Transaction],
    receipts: Dict[int, List[Receipt]],
    actor: RoleContext,
    back: str,
    actions: bool = True,
) -> List[str]:
    rows = []
    for t in txs:
        links = " ".join(
            f'<a href="{esc(r.file_url)}" target="_blank">{esc(r.file_name)}</a>'
            for r in receipts.get(t.id, [])
        )
        buttons = ""
        if actions and actor.is_admin:
            if t.statut is Statut.EN_ATTENTE:
                buttons += confirm_button(
                    f"/transactions/{t.id}/approve", "Approuver", "Approuver cette transaction ?",
                    cls="btn good", hidden={"next": back},
                )
                buttons += " " + confirm_button(
                    f"/transactions/{t.id}/reject", "Rejeter", "Rejeter cette transaction ?",
                    cls="btn danger", hidden={"next": back},
                )
            buttons += " " + confirm_button(
                f"/transactions/{t.id}/delete", "Supprimer", "Supprimer définitivement cette transaction ?",
                hidden={"next": back},
            )
        details = " · ".join(
            esc(x) for x in (t.matricule, t.numero_recu, t.responsable_fonction) if x
        )
        rows.append(f"""
          <tr>
            <td class="mono">{t.date_transaction.strftime("%d/%m/%Y")}</td>
            <td>{type_badge(t.type)}</td>
            <td>{esc(t.categorie)}</td>
            <td><b>{esc(t.libelle)}</b><div class="muted">{details}</div></td>
            <td class="mono right">{fmt(t.montant)}</td>
            <td>{statut_badge(t.statut)}</td>
            <td class="muted">{links}</td>
            {f"<td>{buttons}</td>" if actions else ""}
          </tr>
        """)
    return rows


def receipts_by_tx(store: TransactionStore) -> Dict[int, List[Receipt]]:
    out: Dict[int, List[Receipt]] = {}
    for r in store.receipts():
        out.setdefault(r.transaction_id, []).append(r)
    return out


@router.get("/dashboard", response_class=HTMLResponse)
def dashboard(request: Request):
    gate, visitor = require_login(request)
    if gate:
        return gate
    svc = services_of(request)

    txs = svc.store.list()
    totals = aggregate(txs)
    nb_membres = svc.database.count("membres")
    rows = transaction_rows(txs[:5], receipts_by_tx(svc.store), visitor.actor, "/dashboard", actions=False)

    solde_cls = "good" if totals.solde >= 0 else "bad"
    body = f"""
    <div class="card">
      <h1>Tableau de bord</h1>
      <div class="muted">Bonjour {esc(visitor.user.display_name)} · {role_badge(visitor.actor.role)}</div>
      <div style="height:14px"></div>
      <div class="kpis three">
        <div class="kpi good"><div class="t">Total entrées (approuvées)</div><div class="v">{fmt(totals.entrees)}</div></div>
        <div class="kpi bad"><div class="t">Total sorties (approuvées)</div><div class="v">{fmt(totals.sorties)}</div></div>
        <div class="kpi {solde_cls}"><div class="t">Solde</div><div class="v">{fmt(totals.solde)}</div></div>
      </div>
      <div style="height:12px"></div>
      <div class="kpis three">
        <div class="kpi"><div class="t">Membres</div><div class="v">{nb_membres}</div></div>
        <div class="kpi"><div class="t">Transactions en attente</div><div class="v">{totals.pending_count}</div></div>
        <div class="kpi"><div class="t">Transactions approuvées</div><div class="v">{totals.count}</div></div>
      </div>
    </div>

    <div class="card">
      <h2>Transactions récentes</h2>
      {table("tblRecent", ["Date", "Type", "Catégorie", "Libellé", "Montant", "Statut", "Reçus"], rows, "Aucune transaction")}
      <div style="height:10px"></div>
      <a class="btn" href="/transactions">Toutes les transactions</a>
    </div>
    """
    return page(request, visitor, "Tableau de bord", body)


# ============================================================
# Transactions
# ============================================================
def transaction_form() -> str:
    suggestions = sorted({c for cats in CATEGORIES.values() for c in cats})
    datalist = "".join(f'<option value="{esc(c)}"></option>' for c in suggestions)
    type_options = options([(t.value, t.label) for t in TransactionType])
    return f"""
    <div class="card">
      <h2>Nouvelle transaction</h2>
      <form method="post" action="/transactions" enctype="multipart/form-data">
        <div class="row">
          <div class="col"><label>Type</label><select name="type">{type_options}</select></div>
          <div class="col"><label>Catégorie</label><input name="categorie" list="categories" required /></div>
          <div class="col"><label>Montant (F CFA)</label><input name="montant" inputmode="decimal" required /></div>
          <div class="col"><label>Date</label><input name="date_transaction" type="date" value="{date.today().isoformat()}" required /></div>
        </div>
        <datalist id="categories">{datalist}</datalist>
        <label>Libellé</label>
        <input name="libelle" required />
        <div class="row">
          <div class="col"><label>Matricule</label><input name="matricule" /></div>
          <div class="col"><label>Numéro de reçu</label><input name="numero_recu" /></div>
          <div class="col"><label>Fonction du responsable</label><input name="responsable_fonction" /></div>
        </div>
        <label>Pièce justificative (PDF, JPG, PNG)</label>
        <input name="receipt" type="file" accept=".pdf,.jpg,.jpeg,.png" />
        <div style="height:12px"></div>
        <button class="btn primary" type="submit">Enregistrer</button>
      </form>
    </div>
    """


@router.get("/transactions", response_class=HTMLResponse)
def transactions_page(request: Request, statut: str = ""):
    gate, visitor = require_login(request)
    if gate:
        return gate
    svc = services_of(request)

    try:
        selected = Statut(statut) if statut else None
    except ValueError:
        raise ValidationError(f"Statut inconnu: {statut}") from None
    txs = svc.store.list(statut=selected)
    rows = transaction_rows(txs, receipts_by_tx(svc.store), visitor.actor, request.url.path)

    filters = '<a class="pill{}" href="/transactions">Toutes</a>'.format(" active" if selected is None else "")
    for s in Statut:
        active = " active" if s is selected else ""
        filters += f' <a class="pill{active}" href="/transactions?{urlencode({"statut": s.value})}">{esc(s.label)}</a>'

    headers = ["Date", "Type", "Catégorie", "Libellé", "Montant", "Statut", "Reçus", "Actions"]
    body = f"""
    {transaction_form() if visitor.actor.is_tresorier else ""}
    <div class="card">
      <h1>Transactions</h1>
      <div class="tabs">{filters}</div>
      {table("tblTransactions", headers, rows, "Aucune transaction", search="Recherche (libellé / catégorie / montant)")}
    </div>
    """
    return page(request, visitor, "Transactions", body)


@router.post("/transactions")
def transactions_create(
    request: Request,
    type: str = Form(""),
    categorie: str = Form(""),
    montant: str = Form(""),
    libelle: str = Form(""),
    date_transaction: str = Form(""),
    matricule: str = Form(""),
    numero_recu: str = Form(""),
    responsable_fonction: str = Form(""),
    receipt: Optional[UploadFile] = File(None),
):
    gate, visitor = require_login(request)
    if gate:
        return gate
    svc = services_of(request)

    draft = TransactionDraft(
        type=type,
        categorie=categorie,
        montant=montant,
        libelle=libelle,
        date_transaction=date_transaction,
        matricule=matricule,
        numero_recu=numero_recu,
        responsable_fonction=responsable_fonction,
    )
    tx = svc.workflow.create(visitor.actor, draft)

    if receipt is None or not receipt.filename:
        flash(request, "Transaction créée avec succès")
        return redirect("/transactions")
    try:
        svc.workflow.attach_receipt(visitor.actor, tx.id, *read_upload(receipt))
    except AssoError as e:
        logger.error("Receipt upload failed for transaction %s: %s", tx.id, e)
        flash(request, f"Transaction créée, mais la pièce jointe a échoué : {e}")
    else:
        flash(request, "Transaction créée avec succès")
    return redirect("/transactions")


@router.post("/transactions/{tx_id}/approve")
def transactions_approve(request: Request, tx_id: int, next: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).workflow.approve(visitor.actor, tx_id)
    flash(request, "Transaction approuvée")
    return redirect(safe_next(next, "/transactions"))


@router.post("/transactions/{tx_id}/reject")
def transactions_reject(request: Request, tx_id: int, next: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).workflow.reject(visitor.actor, tx_id)
    flash(request, "Transaction rejetée")
    return redirect(safe_next(next, "/transactions"))


@router.post("/transactions/{tx_id}/delete")
def transactions_delete(request: Request, tx_id: int, next: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).workflow.delete(visitor.actor, tx_id)
    flash(request, "Transaction supprimée")
    return redirect(safe_next(next, "/transactions"))


# ============================================================
# Membres
# ============================================================
def membre_form(action: str, submit: str, membre: Optional[Membre] = None) -> str:
    m = membre
    cursus = m.cursus if m else PreparatoryYear()
    track = cursus.track_label
    level = "" if isinstance(cursus, PreparatoryYear) else cursus.level_label
    track_options = options([(t, t) for t in (ANNEE_PREPARATOIRE,) + TRACKS], track)
    level_options = options([("", "-")] + [(lv, lv) for lv in LEVELS], level)
    sexe_options = options([(s, "Masculin" if s == "M" else "Féminin") for s in SEXES], m.sexe if m else "M")
    return f"""
    <form method="post" action="{esc(action)}">
      <div class="row">
        <div class="col"><label>Identifiant</label><input name="identifiant" value="{esc(m.identifiant if m else "")}" required /></div>
        <div class="col"><label>Nom</label><input name="nom" value="{esc(m.nom if m else "")}" required /></div>
        <div class="col"><label>Prénom</label><input name="prenom" value="{esc(m.prenom if m else "")}" required /></div>
      </div>
      <div class="row">
        <div class="col"><label>Date de naissance</label><input name="date_naissance" type="date" value="{m.date_naissance.isoformat() if m else ""}" required /></div>
        <div class="col"><label>Sexe</label><select name="sexe">{sexe_options}</select></div>
        <div class="col"><label>Filière</label><select name="filiere">{track_options}</select></div>
        <div class="col"><label>Niveau</label><select name="niveau">{level_options}</select></div>
      </div>
      <div class="row">
        <div class="col"><label>Numéro de dossier</label><input name="numero_dossier" value="{esc(m.numero_dossier if m else "")}" /></div>
        <div class="col"><label>INE</label><input name="ine" value="{esc(m.ine if m else "")}" /></div>
      </div>
      <div style="height:12px"></div>
      <button class="btn primary" type="submit">{esc(submit)}</button>
    </form>
    """


def membre_rows(membres: List[Membre], back: str) -> List[str]:
    rows = []
    for m in membres:
        account = '<span class="badge ok"><span class="b"></span>Compte lié</span>' if m.user_id else '<span class="badge"><span class="b"></span>Sans compte</span>'
        rows.append(f"""
          <tr>
            <td class="mono">{esc(m.identifiant)}</td>
            <td><a href="/membres/{m.id}"><b>{esc(m.full_name)}</b></a></td>
            <td>{esc(m.cursus.track_label)}</td>
            <td>{esc(m.cursus.level_label)}</td>
            <td>{esc(m.sexe)}</td>
            <td class="mono">{m.date_naissance.strftime("%d/%m/%Y")}</td>
            <td>{account}</td>
            <td>{confirm_button(f"/membres/{m.id}/delete", "Supprimer", "Supprimer ce membre ?", hidden={"next": back})}</td>
          </tr>
        """)
    return rows


MEMBRE_HEADERS = ["Identifiant", "Nom", "Filière", "Niveau", "Sexe", "Naissance", "Compte", "Actions"]


@router.get("/membres", response_class=HTMLResponse)
def membres_page(request: Request):
    gate, visitor = require_admin(request)
    if gate:
        return gate
    membres = services_of(request).members.list()
    body = f"""
    <div class="card">
      <h2>Ajouter un membre</h2>
      {membre_form("/membres", "Créer membre")}
    </div>
    <div class="card">
      <h1>Membres ({len(membres)})</h1>
      {table("tblMembres", MEMBRE_HEADERS, membre_rows(membres, "/membres"), "Aucun membre", search="Recherche (identifiant / nom / filière)")}
    </div>
    """
    return page(request, visitor, "Membres", body)


def membre_form_from(
    identifiant: str, nom: str, prenom: str, date_naissance: str, filiere: str,
    niveau: str, sexe: str, numero_dossier: str, ine: str,
) -> MembreForm:
    return MembreForm(
        identifiant=identifiant, nom=nom, prenom=prenom, date_naissance=date_naissance,
        filiere=filiere, niveau=niveau, sexe=sexe, numero_dossier=numero_dossier, ine=ine,
    )


@router.post("/membres")
def membres_create(
    request: Request,
    identifiant: str = Form(""),
    nom: str = Form(""),
    prenom: str = Form(""),
    date_naissance: str = Form(""),
    filiere: str = Form(""),
    niveau: str = Form(""),
    sexe: str = Form("M"),
    numero_dossier: str = Form(""),
    ine: str = Form(""),
):
    gate, visitor = require_login(request)
    if gate:
        return gate
    form = membre_form_from(identifiant, nom, prenom, date_naissance, filiere, niveau, sexe, numero_dossier, ine)
    membre = services_of(request).members.create(visitor.actor, form)
    flash(request, f"Membre {membre.full_name} ajouté")
    return redirect("/membres")


@router.get("/membres/{membre_id}", response_class=HTMLResponse)
def membres_edit_page(request: Request, membre_id: int):
    gate, visitor = require_admin(request)
    if gate:
        return gate
    membre = services_of(request).members.get(membre_id)
    body = f"""
    <div class="card">
      <h1>Modifier {esc(membre.full_name)}</h1>
      <div class="muted">Ajouté le {esc(membre.created_at[:10])}</div>
      <div style="height:10px"></div>
      {membre_form(f"/membres/{membre.id}/update", "Enregistrer", membre)}
      <div style="height:10px"></div>
      <a class="btn" href="/membres">Retour</a>
    </div>
    """
    return page(request, visitor, "Modifier membre", body)


@router.post("/membres/{membre_id}/update")
def membres_update(
    request: Request,
    membre_id: int,
    identifiant: str = Form(""),
    nom: str = Form(""),
    prenom: str = Form(""),
    date_naissance: str = Form(""),
    filiere: str = Form(""),
    niveau: str = Form(""),
    sexe: str = Form("M"),
    numero_dossier: str = Form(""),
    ine: str = Form(""),
):
    gate, visitor = require_login(request)
    if gate:
        return gate
    form = membre_form_from(identifiant, nom, prenom, date_naissance, filiere, niveau, sexe, numero_dossier, ine)
    services_of(request).members.update(visitor.actor, membre_id, form)
    flash(request, "Membre mis à jour")
    return redirect("/membres")


@router.post("/membres/{membre_id}/delete")
def membres_delete(request: Request, membre_id: int, next: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).members.delete(visitor.actor, membre_id)
    flash(request, "Membre supprimé")
    return redirect(safe_next(next, "/membres"))


# ============================================================
# Rapports
# ============================================================
def period_from_query(kind: str, periode: str) -> Period:
    if not periode:
        if kind not in (MENSUEL, ANNUEL):
            raise ValidationError(f"Type de rapport invalide: {kind}")
        return Period.current(kind, date.today())
    return Period.parse(kind, periode)


@router.get("/rapports", response_class=HTMLResponse)
def rapports_page(request: Request, type: str = MENSUEL, periode: str = ""):
    gate, visitor = require_admin(request)
    if gate:
        return gate
    svc = services_of(request)

    period = period_from_query(type, periode)
    report = build_report(svc.store, period)
    totals = report.totals

    today = date.today()
    choices = recent_months(today) if period.kind == MENSUEL else recent_years(today)
    period_options = options([(p.value, p.label) for p in choices], period.value)
    kind_tabs = ""
    for kind, label in ((MENSUEL, "Mensuel"), (ANNUEL, "Annuel")):
        active = " active" if kind == period.kind else ""
        kind_tabs += f'<a class="pill{active}" href="/rapports?{urlencode({"type": kind})}">{label}</a> '

    query = urlencode({"type": period.kind, "periode": period.value})
    cat_rows = [
        f"""<tr><td>{esc(cat)}</td><td class="mono right">{fmt(a.entrees)}</td><td class="mono right">{fmt(a.sorties)}</td></tr>"""
        for cat, a in totals.by_category.items()
    ]
    tx_rows = transaction_rows(report.transactions, {}, visitor.actor, "", actions=False)

    exports = '<div class="muted">Aucune transaction approuvée sur cette période : export indisponible.</div>'
    if not report.is_empty:
        exports = f"""
        <a class="btn" href="/rapports/export.csv?{query}">Exporter CSV</a>
        <a class="btn" href="/rapports/export.xlsx?{query}">Exporter Excel</a>
        <a class="btn primary" href="/rapports/print?{query}" target="_blank">Imprimer / PDF</a>
        """

    body = f"""
    <div class="card">
      <h1>{esc(period.title)}</h1>
      <div class="tabs">{kind_tabs}</div>
      <form method="get" action="/rapports" class="row">
        <input type="hidden" name="type" value="{esc(period.kind)}" />
        <div class="col"><label>Période</label><select name="periode" onchange="this.form.submit()">{period_options}</select></div>
      </form>
      <div style="height:14px"></div>
      <div class="kpis three">
        <div class="kpi good"><div class="t">Total entrées</div><div class="v">{fmt(totals.entrees)}</div></div>
        <div class="kpi bad"><div class="t">Total sorties</div><div class="v">{fmt(totals.sorties)}</div></div>
        <div class="kpi"><div class="t">Solde</div><div class="v">{fmt(totals.solde)}</div></div>
      </div>
      <div style="height:14px"></div>
      {exports}
    </div>

    <div class="card">
      <h2>Résumé par catégorie</h2>
      {table("tblCategories", ["Catégorie", "Entrées", "Sorties"], cat_rows, "Aucune catégorie")}
    </div>

    <div class="card">
      <h2>Transactions approuvées ({totals.count})</h2>
      {table("tblReport", ["Date", "Type", "Catégorie", "Libellé", "Montant", "Statut", "Reçus"], tx_rows, "Aucune transaction")}
    </div>
    """
    return page(request, visitor, "Rapports", body)


@router.get("/rapports/export.csv")
def rapports_csv(request: Request, type: str = MENSUEL, periode: str = ""):
    gate, visitor = require_admin(request)
    if gate:
        return gate
    report = build_report(services_of(request).store, period_from_query(type, periode))
    content = to_csv(report)
    filename = csv_filename(report.period)
    logger.info("User %s exported %s", visitor.actor.user_id, filename)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/rapports/export.xlsx")
def rapports_xlsx(request: Request, type: str = MENSUEL, periode: str = ""):
    gate, visitor = require_admin(request)
    if gate:
        return gate
    report = build_report(services_of(request).store, period_from_query(type, periode))
    content = to_xlsx(report)
    filename = xlsx_filename(report.period)
    logger.info("User %s exported %s", visitor.actor.user_id, filename)
    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/rapports/print", response_class=HTMLResponse)
def rapports_print(request: Request, type: str = MENSUEL, periode: str = ""):
    gate, visitor = require_admin(request)
    if gate:
        return gate
    svc = services_of(request)
    report = build_report(svc.store, period_from_query(type, periode))
    return HTMLResponse(to_printable_html(report, svc.settings.current.app_name))


# ============================================================
# Paramétrage
# ============================================================
TABS = [
    ("utilisateurs", "Utilisateurs"),
    ("transactions", "Transactions"),
    ("membres", "Membres"),
    ("application", "Application"),
    ("systeme", "Système"),
]


def settings_users(svc: Services, visitor: Visitor) -> str:
    rows = []
    for entry in svc.accounts.list_users():
        u = entry.user
        role_options = options([(r.value, r.label) for r in Role], entry.role.value if entry.role else "")
        is_self = u.id == visitor.actor.user_id
        delete = "" if is_self else confirm_button(
            f"/parametrage/utilisateurs/{u.id}/delete", "Supprimer",
            "Supprimer ce compte utilisateur ?",
        )
        rows.append(f"""
          <tr>
            <td>{avatar(u.profile_photo_url, u.initials, small=True)}</td>
            <td><b>{esc(u.display_name)}</b><div class="muted">{esc(u.email)}</div></td>
            <td>{role_badge(entry.role)}</td>
            <td>
              <form class="inline" method="post" action="/parametrage/utilisateurs/{u.id}/role">
                <select name="role" style="width:auto">{role_options}</select>
                <button class="btn" type="submit">Changer</button>
              </form>
            </td>
            <td>{delete}</td>
          </tr>
        """)
    return f"""
    <div class="card">
      <h2>Utilisateurs et rôles</h2>
      {table("tblUsers", ["", "Utilisateur", "Rôle", "Modifier le rôle", "Actions"], rows, "Aucun utilisateur", search="Recherche (nom / email)")}
    </div>
    """


def settings_transactions(svc: Services, visitor: Visitor) -> str:
    txs = svc.store.list(limit=100)
    rows = transaction_rows(txs, receipts_by_tx(svc.store), visitor.actor, "/parametrage?tab=transactions")
    headers = ["Date", "Type", "Catégorie", "Libellé", "Montant", "Statut", "Reçus", "Actions"]
    return f"""
    <div class="card">
      <h2>Dernières transactions (100)</h2>
      {table("tblAdminTx", headers, rows, "Aucune transaction", search="Recherche")}
    </div>
    """


def settings_membres(svc: Services, visitor: Visitor) -> str:
    membres = svc.members.list()
    return f"""
    <div class="card">
      <h2>Membres ({len(membres)})</h2>
      {table("tblAdminMembres", MEMBRE_HEADERS, membre_rows(membres, "/parametrage?tab=membres"), "Aucun membre", search="Recherche")}
    </div>
    """


def settings_application(svc: Services, visitor: Visitor) -> str:
    branding = svc.settings.current
    logo = '<div class="muted">Aucun logo</div>'
    if branding.app_logo_url:
        logo = f"""
        <img src="{esc(branding.app_logo_url)}" alt="logo" style="max-height:80px; border-radius:12px"/>
        <div style="height:8px"></div>
        {confirm_button("/parametrage/application/logo/delete", "Retirer le logo", "Retirer le logo ?")}
        """
    return f"""
    <div class="row">
      <div class="col card">
        <h2>Nom de l'application</h2>
        <form method="post" action="/parametrage/application/nom">
          <label>Nom</label>
          <input name="app_name" value="{esc(branding.app_name)}" maxlength="80" required />
          <div style="height:12px"></div>
          <button class="btn primary" type="submit">Enregistrer</button>
        </form>
      </div>
      <div class="col card">
        <h2>Logo</h2>
        {logo}
        <form method="post" action="/parametrage/application/logo" enctype="multipart/form-data">
          <label>Nouveau logo (JPG, PNG, GIF, WEBP)</label>
          <input name="logo" type="file" accept="image/*" required />
          <div style="height:12px"></div>
          <button class="btn primary" type="submit">Téléverser</button>
        </form>
      </div>
    </div>
    """


def settings_system(svc: Services, visitor: Visitor) -> str:
    totals = aggregate(svc.store.list())
    counts = {
        "Utilisateurs": svc.database.count("users"),
        "Membres": svc.database.count("membres"),
        "Transactions": svc.database.count("transactions"),
        "Messages": svc.database.count("community_messages"),
    }
    kpis = "".join(
        f'<div class="kpi"><div class="t">{esc(label)}</div><div class="v">{n}</div></div>'
        for label, n in counts.items()
    )
    return f"""
    <div class="card">
      <h2>Statistiques système</h2>
      <div class="kpis">{kpis}</div>
      <div style="height:12px"></div>
      <div class="kpis three">
        <div class="kpi good"><div class="t">Entrées approuvées</div><div class="v">{fmt(totals.entrees)}</div></div>
        <div class="kpi bad"><div class="t">Sorties approuvées</div><div class="v">{fmt(totals.sorties)}</div></div>
        <div class="kpi"><div class="t">En attente</div><div class="v">{totals.pending_count}</div></div>
      </div>
      <div style="height:12px"></div>
      <div class="muted">Base: {esc(str(svc.config.db_path))} · Fichiers: {esc(str(svc.config.upload_dir))}</div>
    </div>
    """


TAB_RENDERERS = {
    "utilisateurs": settings_users,
    "transactions": settings_transactions,
    "membres": settings_membres,
    "application": settings_application,
    "systeme": settings_system,
}


@router.get("/parametrage", response_class=HTMLResponse)
def parametrage_page(request: Request, tab: str = "utilisateurs"):
    gate, visitor = require_admin(request)
    if gate:
        return gate
    if tab not in TAB_RENDERERS:
        tab = "utilisateurs"
    svc = services_of(request)

    tabs = "".join(
        f'<a class="pill{" active" if key == tab else ""}" href="/parametrage?tab={key}">{label}</a> '
        for key, label in TABS
    )
    body = f"""
    <div class="card">
      <h1>Paramétrage</h1>
      <div class="tabs">{tabs}</div>
    </div>
    {TAB_RENDERERS[tab](svc, visitor)}
    """
    return page(request, visitor, "Paramétrage", body)


@router.post("/parametrage/utilisateurs/{user_id}/role")
def parametrage_set_role(request: Request, user_id: int, role: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    set_role(services_of(request).database, visitor.actor, user_id, parse_role(role))
    flash(request, "Rôle mis à jour")
    return redirect("/parametrage?tab=utilisateurs")


@router.post("/parametrage/utilisateurs/{user_id}/delete")
def parametrage_delete_user(request: Request, user_id: int):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).accounts.delete_user(visitor.actor, user_id)
    flash(request, "Utilisateur supprimé")
    return redirect("/parametrage?tab=utilisateurs")


@router.post("/parametrage/application/nom")
def parametrage_app_name(request: Request, app_name: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).settings.update_name(visitor.actor, app_name)
    flash(request, "Nom de l'application mis à jour")
    return redirect("/parametrage?tab=application")


@router.post("/parametrage/application/logo")
def parametrage_app_logo(request: Request, logo: Optional[UploadFile] = File(None)):
    gate, visitor = require_login(request)
    if gate:
        return gate
    upload = read_upload(logo)
    if upload is None:
        raise ValidationError("Aucun fichier sélectionné")
    services_of(request).settings.update_logo(visitor.actor, *upload)
    flash(request, "Logo mis à jour")
    return redirect("/parametrage?tab=application")


@router.post("/parametrage/application/logo/delete")
def parametrage_app_logo_delete(request: Request):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).settings.remove_logo(visitor.actor)
    flash(request, "Logo retiré")
    return redirect("/parametrage?tab=application")


# ============================================================
# Profil
# ============================================================
@router.get("/profil", response_class=HTMLResponse)
def profil_page(request: Request):
    gate, visitor = require_login(request)
    if gate:
        return gate
    svc = services_of(request)
    user = visitor.user
    membre = svc.members.find_by_user(user.id)

    mine = svc.store.list(user_id=user.id)
    totals = aggregate(mine, user_id=user.id)
    created = sum(1 for t in mine if t.created_by == user.id)
    rows = transaction_rows(mine[:10], receipts_by_tx(svc.store), visitor.actor, "/profil", actions=False)

    membre_html = '<div class="muted">Aucune fiche membre liée à ce compte.</div>'
    if membre:
        membre_html = f"""
        <div class="kpis">
          <div class="kpi"><div class="t">Identifiant</div><div class="v">{esc(membre.identifiant)}</div></div>
          <div class="kpi"><div class="t">Filière</div><div class="v" style="font-size:15px">{esc(membre.cursus.track_label)}</div></div>
          <div class="kpi"><div class="t">Niveau</div><div class="v">{esc(membre.cursus.level_label)}</div></div>
          <div class="kpi"><div class="t">Naissance</div><div class="v" style="font-size:15px">{membre.date_naissance.strftime("%d/%m/%Y")}</div></div>
        </div>
        <div class="muted" style="margin-top:8px">Sexe: {esc(membre.sexe)} · Dossier: {esc(membre.numero_dossier) or "-"} · INE: {esc(membre.ine) or "-"}</div>
        """

    remove = ""
    if user.profile_photo_url:
        remove = confirm_button("/profil/photo/delete", "Retirer la photo", "Retirer votre photo de profil ?")

    body = f"""
    <div class="card">
      <div class="row" style="align-items:center">
        <div>{avatar(user.profile_photo_url, user.initials)}</div>
        <div class="col">
          <h1>{esc(user.display_name)}</h1>
          <div class="muted">{esc(user.email)} · inscrit le {esc(user.created_at[:10])}</div>
          <div style="height:6px"></div>
          {role_badge(visitor.actor.role)}
        </div>
      </div>
      <div style="height:12px"></div>
      <form method="post" action="/profil/photo" enctype="multipart/form-data" class="row">
        <div class="col"><label>Photo de profil</label><input name="photo" type="file" accept="image/*" required /></div>
        <div style="align-self:flex-end"><button class="btn primary" type="submit">Téléverser</button></div>
      </form>
      <div style="height:8px"></div>
      {remove}
    </div>

    <div class="card">
      <h2>Fiche membre</h2>
      {membre_html}
    </div>

    <div class="card">
      <h2>Mon activité</h2>
      <div class="kpis three">
        <div class="kpi"><div class="t">Transactions créées</div><div class="v">{created}</div></div>
        <div class="kpi good"><div class="t">Entrées approuvées</div><div class="v">{fmt(totals.entrees)}</div></div>
        <div class="kpi bad"><div class="t">Sorties approuvées</div><div class="v">{fmt(totals.sorties)}</div></div>
      </div>
      <div style="height:12px"></div>
      {table("tblMine", ["Date", "Type", "Catégorie", "Libellé", "Montant", "Statut", "Reçus"], rows, "Aucune transaction")}
    </div>
    """
    return page(request, visitor, "Mon profil", body)


@router.post("/profil/photo")
def profil_photo(request: Request, photo: Optional[UploadFile] = File(None)):
    gate, visitor = require_login(request)
    if gate:
        return gate
    upload = read_upload(photo)
    if upload is None:
        raise ValidationError("Aucun fichier sélectionné")
    services_of(request).accounts.update_profile_photo(visitor.actor, *upload)
    flash(request, "Photo de profil mise à jour")
    return redirect("/profil")


@router.post("/profil/photo/delete")
def profil_photo_delete(request: Request):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).accounts.remove_profile_photo(visitor.actor)
    flash(request, "Photo de profil retirée")
    return redirect("/profil")


# ============================================================
# Communauté
# ============================================================
@router.get("/communaute", response_class=HTMLResponse)
def communaute_page(request: Request):
    gate, visitor = require_login(request)
    if gate:
        return gate
    messages = services_of(request).community.list()

    items = []
    for msg in messages:
        mine = msg.user_id == visitor.actor.user_id
        initials = "".join(p[0] for p in (msg.author_prenom, msg.author_nom) if p).upper() or msg.author_email[:2].upper()
        meta = esc(msg.created_at.replace("T", " ")[:16])
        if msg.edited:
            meta += " · modifié"
        if msg.membre_cursus is not None:
            meta += f" · {esc(msg.membre_cursus.label)}"
        actions = ""
        if mine:
            actions += f"""
            <details>
              <summary class="muted">Modifier</summary>
              <form method="post" action="/communaute/{msg.id}/edit">
                <textarea name="content" rows="3" required>{esc(msg.content)}</textarea>
                <div style="height:6px"></div>
                <button class="btn" type="submit">Enregistrer</button>
              </form>
            </details>
            """
        if mine or visitor.actor.is_admin:
            actions += confirm_button(f"/communaute/{msg.id}/delete", "Supprimer", "Supprimer ce message ?")
        items.append(f"""
          <div class="msg">
            <div>{avatar(msg.author_photo_url, initials, small=True)}</div>
            <div class="body">
              <div><b>{esc(msg.author_name)}</b> <span class="muted">{meta}</span></div>
              <div>{esc(msg.content)}</div>
              {actions}
            </div>
          </div>
        """)

    body = f"""
    <div class="card">
      <h1>Communauté</h1>
      <form method="post" action="/communaute">
        <label>Nouveau message</label>
        <textarea name="content" rows="3" maxlength="5000" required></textarea>
        <div style="height:10px"></div>
        <button class="btn primary" type="submit">Publier</button>
      </form>
    </div>
    <div class="card">
      {''.join(items) if items else '<div class="muted">Aucun message pour le moment.</div>'}
    </div>
    """
    return page(request, visitor, "Communauté", body)


@router.post("/communaute")
def communaute_post(request: Request, content: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).community.post(visitor.actor, content)
    return redirect("/communaute")


@router.post("/communaute/{message_id}/edit")
def communaute_edit(request: Request, message_id: int, content: str = Form("")):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).community.edit(visitor.actor, message_id, content)
    flash(request, "Message modifié")
    return redirect("/communaute")


@router.post("/communaute/{message_id}/delete")
def communaute_delete(request: Request, message_id: int):
    gate, visitor = require_login(request)
    if gate:
        return gate
    services_of(request).community.delete(visitor.actor, message_id)
    flash(request, "Message supprimé")
    return redirect("/communaute")
