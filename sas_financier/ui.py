"""Base layout and small HTML helpers shared by the pages."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Iterable, List, Optional

from fastapi.responses import HTMLResponse
from jinja2 import BaseLoader, Environment, select_autoescape
from markupsafe import Markup, escape

from sas_financier.aggregation import format_xof
from sas_financier.roles import Role
from sas_financier.settings import Branding
from sas_financier.transactions import Statut, TransactionType

env = Environment(loader=BaseLoader(), autoescape=select_autoescape(default_for_string=True))


@dataclass(frozen=True)
class NavItem:
    name: str
    href: str
    admin_only: bool = False


NAVIGATION = [
    NavItem("Tableau de bord", "/dashboard"),
    NavItem("Transactions", "/transactions"),
    NavItem("Communauté", "/communaute"),
    NavItem("Mon profil", "/profil"),
    NavItem("Membres", "/membres", admin_only=True),
    NavItem("Rapports", "/rapports", admin_only=True),
    NavItem("Paramétrage", "/parametrage", admin_only=True),
]


def navigation_for(is_admin: bool) -> List[NavItem]:
    return [item for item in NAVIGATION if is_admin or not item.admin_only]


BASE = """
<!doctype html>
<html lang="fr">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <title>{{ title }} · {{ branding.app_name }}</title>
  <style>
    :root{
      --bg:#0c1424; --card:#13203b; --text:#eaf0fb; --muted:#a3b3d3;
      --line:rgba(255,255,255,.09); --brand:#4f8cff; --brand2:#22c39a;
      --good:#22c39a; --bad:#f06b7f; --warn:#f5b83d;
      --shadow:0 10px 34px rgba(0,0,0,.32); --radius:16px;
    }
    body[data-theme="light"]{
      --bg:#f4f6fb; --card:#ffffff; --text:#101828; --muted:#526079;
      --line:rgba(16,24,40,.10); --shadow:0 8px 24px rgba(16,24,40,.10);
    }
    *{box-sizing:border-box}
    body{margin:0; min-height:100vh; color:var(--text); background:var(--bg);
      font-family: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto, Arial, "Noto Sans";}
    a{color:var(--text)}
    .muted{color:var(--muted); font-size:13px}
    .wrap{max-width:1200px; margin:0 auto; padding:18px}

    .topbar{display:flex; align-items:center; justify-content:space-between; gap:12px; flex-wrap:wrap;
      background:var(--card); border:1px solid var(--line); border-radius:var(--radius);
      box-shadow:var(--shadow); padding:12px 14px; position:sticky; top:10px; z-index:20}
    .brand{display:flex; align-items:center; gap:10px}
    .logo{width:36px; height:36px; border-radius:10px; object-fit:cover;
      background:linear-gradient(135deg, var(--brand), var(--brand2))}
    .menu{display:flex; flex-wrap:wrap; gap:6px; align-items:center}
    .pill{display:inline-flex; align-items:center; padding:7px 11px; border-radius:999px;
      border:1px solid var(--line); text-decoration:none; font-size:13px; cursor:pointer;
      background:transparent; color:var(--text)}
    .pill.active{background:var(--brand); border-color:var(--brand); color:#fff}
    .pill.danger{border-color:rgba(240,107,127,.45)}

    .card{background:var(--card); border:1px solid var(--line); border-radius:var(--radius);
      box-shadow:var(--shadow); padding:16px; margin-bottom:14px}
    .card h1{font-size:20px; margin:0 0 10px}
    .card h2{font-size:16px; margin:0 0 10px}
    .row{display:flex; gap:12px; flex-wrap:wrap}
    .col{flex:1; min-width:220px}

    label{display:block; font-size:12px; color:var(--muted); margin:8px 0 5px}
    input, select, textarea{width:100%; padding:10px 12px; border-radius:12px; color:var(--text);
      border:1px solid var(--line); background:rgba(0,0,0,.18); font:inherit}
    body[data-theme="light"] input, body[data-theme="light"] select,
    body[data-theme="light"] textarea{background:#f7f9fd}

    .btn{display:inline-flex; align-items:center; justify-content:center; padding:9px 13px;
      border-radius:12px; border:1px solid var(--line); cursor:pointer; text-decoration:none;
      font-weight:700; color:var(--text); background:transparent; font-size:13px}
    .btn.primary{background:var(--brand); border-color:var(--brand); color:#fff}
    .btn.good{border-color:rgba(34,195,154,.5)}
    .btn.danger{border-color:rgba(240,107,127,.5); color:var(--bad)}
    form.inline{display:inline}

    .kpis{display:grid; grid-template-columns:repeat(4, 1fr); gap:12px}
    .kpis.three{grid-template-columns:repeat(3, 1fr)}
    @media(max-width:1000px){ .kpis, .kpis.three{grid-template-columns:repeat(2, 1fr)} }
    @media(max-width:520px){ .kpis, .kpis.three{grid-template-columns:1fr} }
    .kpi{border:1px solid var(--line); border-radius:14px; padding:12px}
    .kpi .t{font-size:12px; color:var(--muted); margin-bottom:6px}
    .kpi .v{font-size:20px; font-weight:800}
    .kpi.good .v{color:var(--good)} .kpi.bad .v{color:var(--bad)}

    .badge{display:inline-flex; align-items:center; gap:6px; padding:5px 9px; border-radius:999px;
      font-size:12px; border:1px solid var(--line)}
    .badge .b{width:8px; height:8px; border-radius:999px; background:var(--muted)}
    .badge.ok .b{background:var(--good)} .badge.bad .b{background:var(--bad)}
    .badge.warn .b{background:var(--warn)}

    .table-wrap{border:1px solid var(--line); border-radius:14px; overflow:auto}
    table{width:100%; border-collapse:collapse}
    th, td{padding:10px 12px; border-bottom:1px solid var(--line); text-align:left;
      font-size:13px; vertical-align:top}
    th{font-size:12px; color:var(--muted); cursor:pointer; user-select:none}
    .mono{font-variant-numeric:tabular-nums; white-space:nowrap}
    .right{text-align:right}
    .searchbar{margin:10px 0 12px}
    .tabs{display:flex; gap:6px; flex-wrap:wrap; margin-bottom:14px}
    .avatar{width:64px; height:64px; border-radius:999px; object-fit:cover; display:inline-flex;
      align-items:center; justify-content:center; font-weight:800; background:var(--brand); color:#fff}
    .avatar.sm{width:32px; height:32px; font-size:12px}
    .msg{border-bottom:1px solid var(--line); padding:12px 0; display:flex; gap:12px}
    .msg:last-child{border-bottom:none}
    .msg .body{flex:1; white-space:pre-wrap}
    .toast{position:fixed; right:14px; bottom:14px; background:var(--card); border:1px solid var(--line);
      border-radius:12px; padding:12px 14px; box-shadow:var(--shadow); display:none; max-width:360px}
  </style>
</head>

<body>
  <div class="wrap">
    <div class="topbar">
      <div class="brand">
        {% if branding.app_logo_url %}
          <img class="logo" src="{{ branding.app_logo_url }}" alt="logo"/>
        {% else %}
          <div class="logo"></div>
        {% endif %}
        <div>
          <div><strong>{{ branding.app_name }}</strong></div>
          <div class="muted">
            {% if user %}{{ user.display_name }}{% if role %} · {{ role.label }}{% endif %}
            {% else %}Système de gestion financière associative{% endif %}
          </div>
        </div>
      </div>

      <div class="menu">
        {% for item in nav %}
          <a class="pill{% if item.href == path %} active{% endif %}" href="{{ item.href }}">{{ item.name }}</a>
        {% endfor %}
        <button class="pill" type="button" onclick="toggleTheme()" title="Mode clair/sombre">Thème</button>
        {% if user %}
          <a class="pill danger" href="/logout">Déconnexion</a>
        {% else %}
          <a class="pill" href="/auth">Connexion</a>
        {% endif %}
      </div>
    </div>

    <div style="height:14px"></div>

    {{ body }}
  </div>

  <div id="toast" class="toast"></div>

  <script>
    function toast(msg){
      const t = document.getElementById("toast");
      if(!t) return;
      t.textContent = msg;
      t.style.display = "block";
      clearTimeout(window.__toastTimer);
      window.__toastTimer = setTimeout(()=>{ t.style.display="none"; }, 3200);
    }

    document.querySelectorAll("input[data-search-table]").forEach(inp=>{
      inp.addEventListener("input", ()=>{
        const q = (inp.value||"").toLowerCase().trim();
        const table = document.querySelector(inp.getAttribute("data-search-table"));
        if(!table) return;
        table.querySelectorAll("tbody tr").forEach(tr=>{
          tr.style.display = tr.innerText.toLowerCase().includes(q) ? "" : "none";
        });
      });
    });

    document.querySelectorAll("table[data-sortable]").forEach(table=>{
      table.querySelectorAll("th").forEach((th, idx)=>{
        th.addEventListener("click", ()=>{
          const tbody = table.querySelector("tbody");
          const rows = Array.from(tbody.querySelectorAll("tr"));
          const asc = th.getAttribute("data-asc") !== "1";
          table.querySelectorAll("th").forEach(x=>x.removeAttribute("data-asc"));
          th.setAttribute("data-asc", asc ? "1" : "0");
          rows.sort((a,b)=>{
            const ta = (a.children[idx]?.innerText||"").trim();
            const tb = (b.children[idx]?.innerText||"").trim();
            const na = parseFloat(ta.replace(/\\s/g,"").replace(",",".").replace(/[^0-9.-]/g,""));
            const nb = parseFloat(tb.replace(/\\s/g,"").replace(",",".").replace(/[^0-9.-]/g,""));
            if(!isNaN(na) && !isNaN(nb)) return asc ? (na-nb) : (nb-na);
            return asc ? ta.localeCompare(tb) : tb.localeCompare(ta);
          });
          rows.forEach(r=>tbody.appendChild(r));
        });
      });
    });

    function toggleTheme(){
      const cur = document.body.getAttribute("data-theme") || "dark";
      const next = cur === "dark" ? "light" : "dark";
      document.body.setAttribute("data-theme", next);
      localStorage.setItem("sas_theme", next);
    }
    (function(){
      document.body.setAttribute("data-theme", localStorage.getItem("sas_theme") || "dark");
      {% if flash %}toast({{ flash|tojson }});{% endif %}
    })();
  </script>
</body>
</html>
"""


def render(
    title: str,
    body: str,
    branding: Branding,
    user=None,
    role: Optional[Role] = None,
    is_admin: bool = False,
    path: str = "",
    flash: Optional[str] = None,
    status_code: int = 200,
) -> HTMLResponse:
    tpl = env.from_string(BASE)
    html = tpl.render(
        title=title,
        body=Markup(body),
        branding=branding,
        user=user,
        role=role,
        nav=navigation_for(is_admin) if user else [],
        path=path,
        flash=flash,
    )
    return HTMLResponse(html, status_code=status_code)


# ============================================================
# Fragments
# ============================================================
def esc(value) -> str:
    if value is None:
        return ""
    return str(escape(value))


def fmt(amount) -> str:
    return format_xof(amount)


def error_card(title: str, message: str, back: str) -> str:
    return (
        f'<div class="card"><h1>{esc(title)}</h1><p>{esc(message)}</p>'
        f'<a class="btn" href="{esc(back)}">Retour</a></div>'
    )


STATUT_BADGES = {
    Statut.APPROUVE: "ok",
    Statut.EN_ATTENTE: "warn",
    Statut.REJETE: "bad",
}


def statut_badge(statut: Statut) -> str:
    return f'<span class="badge {STATUT_BADGES[statut]}"><span class="b"></span>{esc(statut.label)}</span>'


def type_badge(tx_type: TransactionType) -> str:
    cls = "ok" if tx_type is TransactionType.ENTREE else "bad"
    return f'<span class="badge {cls}"><span class="b"></span>{esc(tx_type.label)}</span>'


def role_badge(role: Optional[Role]) -> str:
    if role is None:
        return '<span class="badge"><span class="b"></span>Aucun rôle</span>'
    cls = {Role.PRESIDENT: "ok", Role.TRESORIER: "warn", Role.MEMBRE: ""}[role]
    return f'<span class="badge {cls}"><span class="b"></span>{esc(role.label)}</span>'


def avatar(photo_url: Optional[str], initials: str, small: bool = False) -> str:
    cls = "avatar sm" if small else "avatar"
    if photo_url:
        return f'<img class="{cls}" src="{esc(photo_url)}" alt="photo"/>'
    return f'<span class="{cls}">{esc(initials)}</span>'


def options(values: Iterable[tuple], selected: str = "") -> str:
    out = []
    for value, label in values:
        sel = " selected" if str(value) == str(selected) else ""
        out.append(f'<option value="{esc(value)}"{sel}>{esc(label)}</option>')
    return "".join(out)


def table(table_id: str, headers: List[str], rows: List[str], empty: str, search: str = "") -> str:
    search_html = ""
    if search:
        search_html = f"""
        <div class="searchbar">
          <label>{esc(search)}</label>
          <input placeholder="Tape ici..." data-search-table="#{table_id}"/>
        </div>
        """
    head = "".join(f"<th>{esc(h)}</th>" for h in headers)
    body = "".join(rows) if rows else f'<tr><td colspan="{len(headers)}">{esc(empty)}</td></tr>'
    return f"""
    {search_html}
    <div class="table-wrap">
      <table id="{table_id}" data-sortable>
        <thead><tr>{head}</tr></thead>
        <tbody>{body}</tbody>
      </table>
    </div>
    """


def confirm_button(
    action: str, label: str, question: str, cls: str = "btn danger", hidden: Optional[dict] = None
) -> str:
    fields = "".join(
        f'<input type="hidden" name="{esc(k)}" value="{esc(v)}"/>' for k, v in (hidden or {}).items()
    )
    return (
        f'<form class="inline" method="post" action="{esc(action)}" '
        f'onsubmit="return confirm({esc_js(question)});">{fields}'
        f'<button class="{cls}" type="submit">{esc(label)}</button></form>'
    )


def esc_js(text: str) -> str:
    return esc(json.dumps(text))
