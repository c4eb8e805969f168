from __future__ import annotations

import csv
import hashlib
import json
import logging
import os
import secrets
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta
from html import escape
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

import openpyxl
import xlrd
from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel

import quote_pdf
from logging_config import setup_logging

logger = logging.getLogger("offer_portal")

BASE_DIR = Path(__file__).resolve().parent
db_path_raw = os.getenv("DB_PATH", str(BASE_DIR / "app.db"))
DB_PATH = Path(db_path_raw).expanduser()
if not DB_PATH.is_absolute():
    DB_PATH = (BASE_DIR / DB_PATH).resolve()
else:
    DB_PATH = DB_PATH.resolve()

uploads_dir_raw = os.getenv("UPLOADS_DIR", str(BASE_DIR.parent / "uploads"))
UPLOADS_DIR = Path(uploads_dir_raw).expanduser()
if not UPLOADS_DIR.is_absolute():
    UPLOADS_DIR = (BASE_DIR.parent / UPLOADS_DIR).resolve()
else:
    UPLOADS_DIR = UPLOADS_DIR.resolve()

SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "lax").strip().lower()
if SESSION_COOKIE_SAMESITE not in {"lax", "strict", "none"}:
    SESSION_COOKIE_SAMESITE = "lax"

DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@inuma.fr").strip().lower()
DEFAULT_ADMIN_FIRST_NAME = os.getenv("DEFAULT_ADMIN_FIRST_NAME", "Admin").strip()
DEFAULT_ADMIN_LAST_NAME = os.getenv("DEFAULT_ADMIN_LAST_NAME", "Inuma").strip()
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "Admin123!").strip()
SEED_DEFAULT_OFFERS = os.getenv("SEED_DEFAULT_OFFERS", "true").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}

UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

SESSION_COOKIE_NAME = "op_session"
SESSION_DURATION_HOURS = 24 * 7
PASSWORD_MIN_LENGTH = 6

ALLOWED_USER_ROLES = {"client", "agent", "admin", "responsable_plateau"}
SELF_SERVICE_ROLES = {"client", "agent"}
STAFF_ROLES = {"agent", "admin", "responsable_plateau"}
CAMPAIGN_MANAGER_ROLES = {"admin", "responsable_plateau"}

OFFER_PLATE_STATUSES = {"draft", "sent", "viewed", "accepted", "rejected"}
OFFER_PLATE_SEND_METHODS = {"platform", "email"}
QUOTE_STATUSES = {"draft", "pending", "approved", "sent", "accepted", "rejected"}
PAYMENT_STATUS_UNPAID = "Non Payé"
PAYMENT_STATUS_PAID = "Payé"
PAYMENT_STATUSES = {PAYMENT_STATUS_UNPAID, PAYMENT_STATUS_PAID}
PAYABLE_QUOTE_STATUSES = {"approved", "sent", "accepted"}
AGENT_QUOTE_TRANSITIONS = {
    ("draft", "pending"),
    ("pending", "pending"),
    ("approved", "sent"),
}
CLIENT_QUOTE_TRANSITIONS = {
    ("sent", "accepted"),
    ("sent", "rejected"),
}
CAMPAIGN_STATUSES = {"preparation", "active", "completed", "cancelled"}
LEAD_STATUSES = {"new", "contacted", "qualified", "proposal", "negotiation", "won", "lost"}
LEAD_TASK_STATUSES = {"pending", "in_progress", "completed", "cancelled"}
NOTIFICATION_TYPES = {"info", "success", "warning", "error"}

SENDGRID_API_BASE = "https://api.sendgrid.com"
SENDGRID_STATS_ENDPOINTS = {
    "global": "",
    "categories": "/categories",
    "browsers": "/browsers",
    "devices": "/devices",
    "clients": "/clients",
    "geo": "/geo",
}
EMAIL_STATS_DEFAULT_DAYS = 30
PAYMENT_LINK_DEFAULT_API_URL = "https://app-staging.papi.mg/dashboard/api/payment-links"
PAYMENT_LINK_METHODS = ["ORANGE_MONEY", "MVOLA", "VISA"]
PAYMENT_LINK_DESCRIPTION = "Plaquette d'offres"
PAYMENT_NOTIFICATION_REQUIRED_FIELDS = [
    "paymentStatus",
    "paymentMethod",
    "amount",
    "fee",
    "clientName",
    "description",
    "merchantPaymentReference",
    "paymentReference",
    "notificationToken",
]

LEAD_HEADER_ALIASES = {
    "first_name": {"first_name", "firstname", "first name", "prenom", "prénom"},
    "last_name": {"last_name", "lastname", "last name", "nom"},
    "email": {"email", "e-mail", "mail", "courriel"},
    "phone": {"phone", "telephone", "téléphone", "tel", "mobile"},
    "company": {"company", "entreprise", "societe", "société"},
    "position": {"position", "poste", "fonction", "title", "job title"},
}

app = FastAPI(title="Offer Portal API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOW_ORIGIN_REGEX = os.getenv("ALLOWED_ORIGIN_REGEX", "").strip() or None
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    *EXTRA_ALLOWED_ORIGINS,
]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Database helpers
# ----------------------

def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def now_iso() -> str:
    return datetime.utcnow().isoformat()


def init_db() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Profile(
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE,
                first_name TEXT,
                last_name TEXT,
                phone TEXT,
                address TEXT,
                birth_date TEXT,
                business_sector TEXT,
                company_name TEXT,
                company_role TEXT,
                manager_name TEXT,
                role TEXT,
                language TEXT,
                theme TEXT,
                timezone TEXT,
                email_notifications INTEGER DEFAULT 0,
                password_salt TEXT,
                password_hash TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS AuthSession(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                session_hash TEXT UNIQUE,
                expires_at TEXT,
                created_at TEXT,
                last_seen_at TEXT,
                FOREIGN KEY(user_id) REFERENCES Profile(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Offer(
                id TEXT PRIMARY KEY,
                name TEXT,
                description TEXT,
                category TEXT,
                image_url TEXT,
                price_monthly REAL DEFAULT 0,
                setup_fee REAL DEFAULT 0,
                is_active INTEGER DEFAULT 1,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS OfferFeature(
                id TEXT PRIMARY KEY,
                offer_id TEXT,
                feature TEXT,
                created_at TEXT,
                FOREIGN KEY(offer_id) REFERENCES Offer(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS OfferExtra(
                id TEXT PRIMARY KEY,
                offer_id TEXT,
                name TEXT,
                description TEXT,
                unit_price REAL DEFAULT 0,
                created_at TEXT,
                FOREIGN KEY(offer_id) REFERENCES Offer(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CartItem(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                offer_id TEXT,
                quantity INTEGER DEFAULT 1,
                selected_extras TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(user_id) REFERENCES Profile(id),
                FOREIGN KEY(offer_id) REFERENCES Offer(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Folder(
                id TEXT PRIMARY KEY,
                name TEXT,
                agent_id TEXT,
                client_id TEXT,
                quote_id TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS OfferPlate(
                id TEXT PRIMARY KEY,
                name TEXT,
                agent_id TEXT,
                client_id TEXT,
                folder_id TEXT,
                status TEXT,
                sent_at TEXT,
                sent_method TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(folder_id) REFERENCES Folder(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS OfferPlateItem(
                id TEXT PRIMARY KEY,
                offer_plate_id TEXT,
                offer_id TEXT,
                quantity INTEGER DEFAULT 1,
                selected_extras TEXT,
                created_at TEXT,
                FOREIGN KEY(offer_plate_id) REFERENCES OfferPlate(id),
                FOREIGN KEY(offer_id) REFERENCES Offer(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Quote(
                id TEXT PRIMARY KEY,
                offer_plate_id TEXT,
                agent_id TEXT,
                client_id TEXT,
                status TEXT,
                payment_status TEXT,
                total_amount REAL DEFAULT 0,
                payment_link_url TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(offer_plate_id) REFERENCES OfferPlate(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PaymentInfo(
                id TEXT PRIMARY KEY,
                quote_id TEXT,
                bank_name TEXT,
                iban TEXT,
                bic TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(quote_id) REFERENCES Quote(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PaymentNotification(
                id TEXT PRIMARY KEY,
                quote_id TEXT,
                payment_status TEXT,
                payment_method TEXT,
                amount REAL,
                fee REAL,
                client_name TEXT,
                description TEXT,
                merchant_payment_reference TEXT,
                payment_reference TEXT,
                notification_token TEXT,
                processed INTEGER DEFAULT 0,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Campaign(
                id TEXT PRIMARY KEY,
                name TEXT,
                description TEXT,
                objectives TEXT,
                start_date TEXT,
                end_date TEXT,
                status TEXT,
                created_by TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Lead(
                id TEXT PRIMARY KEY,
                campaign_id TEXT,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                phone TEXT,
                company TEXT,
                position TEXT,
                status TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(campaign_id) REFERENCES Campaign(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS LeadAssignment(
                id TEXT PRIMARY KEY,
                lead_id TEXT,
                agent_id TEXT,
                created_by TEXT,
                status TEXT,
                assigned_at TEXT,
                FOREIGN KEY(lead_id) REFERENCES Lead(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS LeadNote(
                id TEXT PRIMARY KEY,
                lead_id TEXT,
                agent_id TEXT,
                content TEXT,
                created_at TEXT,
                FOREIGN KEY(lead_id) REFERENCES Lead(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS LeadTask(
                id TEXT PRIMARY KEY,
                lead_id TEXT,
                agent_id TEXT,
                title TEXT,
                description TEXT,
                status TEXT,
                due_date TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(lead_id) REFERENCES Lead(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Notification(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                type TEXT,
                title TEXT,
                content TEXT,
                link TEXT,
                is_read INTEGER DEFAULT 0,
                created_at TEXT,
                FOREIGN KEY(user_id) REFERENCES Profile(id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Survey(
                id TEXT PRIMARY KEY,
                client_id TEXT,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                phone TEXT,
                address TEXT,
                business_sector TEXT,
                created_at TEXT
            )
            """
        )
        conn.commit()

        cur.execute("PRAGMA table_info(Quote)")
        quote_columns = {row["name"] for row in cur.fetchall()}
        if "payment_link_url" not in quote_columns:
            cur.execute("ALTER TABLE Quote ADD COLUMN payment_link_url TEXT")
        cur.execute("PRAGMA table_info(Profile)")
        profile_columns = {row["name"] for row in cur.fetchall()}
        for column in ("language", "theme", "timezone"):
            if column not in profile_columns:
                cur.execute(f"ALTER TABLE Profile ADD COLUMN {column} TEXT")
        if "email_notifications" not in profile_columns:
            cur.execute("ALTER TABLE Profile ADD COLUMN email_notifications INTEGER DEFAULT 0")
        conn.commit()

        cur.execute("SELECT COUNT(*) as cnt FROM Offer")
        if cur.fetchone()["cnt"] == 0 and SEED_DEFAULT_OFFERS:
            seed_offers(conn)
        ensure_default_admin_user(conn)


def ensure_default_admin_user(conn: sqlite3.Connection) -> None:
    email = DEFAULT_ADMIN_EMAIL
    if not email:
        return
    now = now_iso()
    password = DEFAULT_ADMIN_PASSWORD
    salt = None
    password_hash = None
    if password:
        salt, password_hash = create_password_credentials(password)
    cur = conn.cursor()
    cur.execute("SELECT * FROM Profile WHERE email = ?", (email,))
    existing = cur.fetchone()
    if existing:
        if password and not (existing["password_salt"] and existing["password_hash"]):
            cur.execute(
                """
                UPDATE Profile
                SET password_salt = ?, password_hash = ?, updated_at = ?
                WHERE id = ?
                """,
                (salt, password_hash, now, existing["id"]),
            )
            conn.commit()
        return
    cur.execute(
        """
        INSERT INTO Profile (
            id, email, first_name, last_name, role, language, theme, timezone,
            email_notifications, password_salt, password_hash, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            email,
            DEFAULT_ADMIN_FIRST_NAME,
            DEFAULT_ADMIN_LAST_NAME,
            "admin",
            "fr",
            "light",
            "Europe/Paris",
            0,
            salt,
            password_hash,
            now,
            now,
        ),
    )
    conn.commit()
    logger.info("Created default admin profile %s", email)


# ----------------------
# Seed data
# ----------------------

DEFAULT_OFFERS = [
    {
        "name": "Assurance Auto Standard",
        "description": "Protection de base pour votre véhicule avec responsabilité civile et protection contre le vol",
        "price_monthly": 499.99,
        "setup_fee": 0.0,
        "category": "Auto",
        "features": ["Responsabilité civile", "Protection contre le vol"],
        "extras": [("Assistance 0 km", "Dépannage dès le domicile", 9.99)],
    },
    {
        "name": "Assurance Auto Premium",
        "description": "Protection complète pour votre véhicule avec tous risques, assistance 24/7 et véhicule de remplacement",
        "price_monthly": 899.99,
        "setup_fee": 49.0,
        "category": "Auto",
        "features": ["Tous risques", "Assistance 24/7", "Véhicule de remplacement"],
        "extras": [("Bris de glace sans franchise", "Remplacement du pare-brise sans franchise", 7.5)],
    },
    {
        "name": "Assurance Habitation Basique",
        "description": "Couverture essentielle pour votre maison contre les dommages et la responsabilité civile",
        "price_monthly": 299.99,
        "setup_fee": 0.0,
        "category": "Habitation",
        "features": ["Dégâts des eaux", "Responsabilité civile"],
        "extras": [],
    },
    {
        "name": "Assurance Habitation Complète",
        "description": "Protection complète pour votre maison, incluant les catastrophes naturelles, le vol et les dommages causés par les locataires",
        "price_monthly": 599.99,
        "setup_fee": 29.0,
        "category": "Habitation",
        "features": ["Catastrophes naturelles", "Vol", "Dommages locatifs"],
        "extras": [("Objets de valeur", "Extension de garantie pour les objets de valeur", 12.0)],
    },
    {
        "name": "Assurance Santé Individuelle",
        "description": "Couverture médicale essentielle pour les soins de base et les urgences",
        "price_monthly": 799.99,
        "setup_fee": 0.0,
        "category": "Santé",
        "features": ["Soins courants", "Urgences"],
        "extras": [],
    },
    {
        "name": "Assurance Santé Famille",
        "description": "Protection complète pour toute la famille avec des soins dentaires, ophtalmologiques et hospitaliers",
        "price_monthly": 1499.99,
        "setup_fee": 0.0,
        "category": "Santé",
        "features": ["Dentaire", "Optique", "Hospitalisation"],
        "extras": [("Médecines douces", "Ostéopathie et acupuncture", 15.0)],
    },
    {
        "name": "Assurance Voyage Basic",
        "description": "Couverture essentielle pour vos voyages, incluant les frais médicaux d'urgence",
        "price_monthly": 49.99,
        "setup_fee": 0.0,
        "category": "Voyage",
        "features": ["Frais médicaux d'urgence"],
        "extras": [],
    },
    {
        "name": "Assurance Voyage Premium",
        "description": "Protection complète pour vos voyages, avec annulation, bagages perdus et frais médicaux illimités",
        "price_monthly": 129.99,
        "setup_fee": 0.0,
        "category": "Voyage",
        "features": ["Annulation", "Bagages perdus", "Frais médicaux illimités"],
        "extras": [],
    },
    {
        "name": "Assurance Responsabilité Civile",
        "description": "Protection contre les dommages que vous pourriez causer à des tiers",
        "price_monthly": 199.99,
        "setup_fee": 0.0,
        "category": "Responsabilité",
        "features": ["Dommages aux tiers"],
        "extras": [],
    },
    {
        "name": "Assurance Professionnelle",
        "description": "Couverture pour votre activité professionnelle, incluant la responsabilité civile professionnelle",
        "price_monthly": 699.99,
        "setup_fee": 99.0,
        "category": "Professionnel",
        "features": ["RC professionnelle", "Protection juridique"],
        "extras": [("Cyber-risques", "Couverture des incidents informatiques", 25.0)],
    },
    {
        "name": "Assurance Vie",
        "description": "Protection financière pour vos proches en cas de décès",
        "price_monthly": 399.99,
        "setup_fee": 0.0,
        "category": "Vie",
        "features": ["Capital décès"],
        "extras": [],
    },
    {
        "name": "Assurance Animaux",
        "description": "Couverture des frais vétérinaires pour votre animal de compagnie",
        "price_monthly": 149.99,
        "setup_fee": 0.0,
        "category": "Animaux",
        "features": ["Frais vétérinaires"],
        "extras": [],
    },
]


def seed_offers(conn: sqlite3.Connection) -> None:
    now = now_iso()
    cur = conn.cursor()
    for offer in DEFAULT_OFFERS:
        offer_id = str(uuid.uuid4())
        cur.execute(
            """
            INSERT INTO Offer (
                id, name, description, category, image_url, price_monthly, setup_fee,
                is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                offer_id,
                offer["name"],
                offer["description"],
                offer["category"],
                None,
                offer["price_monthly"],
                offer["setup_fee"],
                1,
                now,
                now,
            ),
        )
        for feature in offer["features"]:
            cur.execute(
                "INSERT INTO OfferFeature (id, offer_id, feature, created_at) VALUES (?, ?, ?, ?)",
                (str(uuid.uuid4()), offer_id, feature, now),
            )
        for name, description, unit_price in offer["extras"]:
            cur.execute(
                """
                INSERT INTO OfferExtra (id, offer_id, name, description, unit_price, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), offer_id, name, description, unit_price, now),
            )
    conn.commit()
    logger.info("Seeded %d default offers", len(DEFAULT_OFFERS))


# ----------------------
# Models
# ----------------------

class UserIn(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str = ""
    company_name: str = ""
    company_role: str = ""
    role: str
    password: Optional[str] = None


class UserOut(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    phone: str = ""
    address: str = ""
    birth_date: Optional[str] = None
    business_sector: str = ""
    company_name: str = ""
    company_role: str = ""
    manager_name: str = ""
    role: str
    language: str = "fr"
    theme: str = "light"
    timezone: str = "Europe/Paris"
    email_notifications: bool = False
    created_at: str
    updated_at: str


class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    company_role: Optional[str] = None
    manager_name: Optional[str] = None
    role: Optional[str] = None
    password: Optional[str] = None


class RegisterIn(BaseModel):
    email: str
    password: str
    confirm_password: str
    first_name: str
    last_name: str
    phone: str = ""
    company_name: str = ""
    role: Optional[str] = None


class AuthLoginIn(BaseModel):
    email: str
    password: str


class AuthUserOut(BaseModel):
    id: str
    email: str
    role: str
    first_name: str
    last_name: str


class ProfileUpdateIn(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    birth_date: Optional[str] = None
    business_sector: Optional[str] = None
    company_name: Optional[str] = None
    company_role: Optional[str] = None
    manager_name: Optional[str] = None
    language: Optional[str] = None
    theme: Optional[str] = None
    timezone: Optional[str] = None
    email_notifications: Optional[bool] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None


class OfferExtraIn(BaseModel):
    name: str
    description: str = ""
    unit_price: float = 0


class OfferExtraOut(BaseModel):
    id: str
    offer_id: str
    name: str
    description: str = ""
    unit_price: float
    created_at: str


class OfferFeatureIn(BaseModel):
    feature: str


class OfferIn(BaseModel):
    name: str
    description: str = ""
    category: str
    image_url: Optional[str] = None
    price_monthly: float = 0
    setup_fee: float = 0
    is_active: bool = True
    features: List[str] = []


class OfferUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    price_monthly: Optional[float] = None
    setup_fee: Optional[float] = None
    is_active: Optional[bool] = None


class OfferOut(BaseModel):
    id: str
    name: str
    description: str = ""
    category: str = ""
    image_url: Optional[str] = None
    price_monthly: float
    setup_fee: float
    is_active: bool
    features: List[str] = []
    extras: List[OfferExtraOut] = []
    created_at: str
    updated_at: str


class CartItemIn(BaseModel):
    offer_id: str
    quantity: int = 1
    selected_extras: Optional[Dict[str, int]] = None


class CartItemUpdate(BaseModel):
    quantity: Optional[int] = None
    selected_extras: Optional[Dict[str, int]] = None


class CartItemOut(BaseModel):
    id: str
    offer_id: str
    quantity: int
    selected_extras: Dict[str, int] = {}
    offer: OfferOut
    created_at: str
    updated_at: str


class CartTotalsOut(BaseModel):
    setup_total: float
    monthly_total: float
    extras_total: float


class CartOut(BaseModel):
    items: List[CartItemOut]
    totals: CartTotalsOut


class OfferPlateItemIn(BaseModel):
    offer_id: str
    quantity: int = 1
    selected_extras: Optional[Dict[str, int]] = None


class OfferPlateCreate(BaseModel):
    name: str
    client_id: str
    folder_id: Optional[str] = None
    items: Optional[List[OfferPlateItemIn]] = None
    send_email: bool = False


class OfferPlateUpdate(BaseModel):
    name: Optional[str] = None
    client_id: Optional[str] = None
    folder_id: Optional[str] = None
    status: Optional[str] = None


class OfferPlateItemsIn(BaseModel):
    items: List[OfferPlateItemIn]


class OfferPlateItemUpdate(BaseModel):
    quantity: Optional[int] = None
    selected_extras: Optional[Dict[str, int]] = None


class OfferPlateSendIn(BaseModel):
    client_id: Optional[str] = None
    method: str = "platform"


class OfferPlateItemOut(BaseModel):
    id: str
    offer_plate_id: str
    offer_id: str
    quantity: int
    selected_extras: Dict[str, int] = {}
    offer: Optional[OfferOut] = None
    created_at: str


class OfferPlateOut(BaseModel):
    id: str
    name: str
    agent_id: Optional[str] = None
    client_id: Optional[str] = None
    folder_id: Optional[str] = None
    status: str
    sent_at: Optional[str] = None
    sent_method: Optional[str] = None
    client_name: Optional[str] = None
    agent_name: Optional[str] = None
    created_at: str
    updated_at: str


class OfferPlateDetailOut(OfferPlateOut):
    items: List[OfferPlateItemOut] = []
    totals: Dict[str, float] = {}
    quote_id: Optional[str] = None


class QuoteCreate(BaseModel):
    offer_plate_id: str
    total_amount: Optional[float] = None


class QuoteOut(BaseModel):
    id: str
    offer_plate_id: Optional[str] = None
    agent_id: Optional[str] = None
    client_id: Optional[str] = None
    status: str
    payment_status: str
    total_amount: float
    payment_link_url: Optional[str] = None
    created_at: str
    updated_at: str


class QuoteListOut(QuoteOut):
    offer_plate_name: Optional[str] = None
    client_name: Optional[str] = None
    agent_name: Optional[str] = None


class QuoteStatusIn(BaseModel):
    status: str


class QuotePaymentStatusIn(BaseModel):
    payment_status: str


class PaymentInfoIn(BaseModel):
    bank_name: str
    iban: str
    bic: str


class PaymentInfoOut(BaseModel):
    id: str
    quote_id: str
    bank_name: str
    iban: str
    bic: str
    created_at: str
    updated_at: str


class PaymentLinkIn(BaseModel):
    amount: Optional[int] = None
    currency: Optional[str] = None
    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    callback_url: Optional[str] = None
    description: Optional[str] = None
    message: Optional[str] = None
    methods: Optional[List[str]] = None


class PaymentLinkOut(BaseModel):
    quote_id: str
    amount: int
    link_url: Optional[str] = None
    response: Dict[str, Any] = {}


class QuoteEmailIn(BaseModel):
    payment_link: Optional[str] = None
    html: Optional[str] = None


class PaymentCallbackIn(BaseModel):
    status: Optional[str] = None


class PaymentNotificationOut(BaseModel):
    id: str
    quote_id: Optional[str] = None
    payment_status: str
    payment_method: str
    amount: float
    fee: float
    client_name: str
    description: str
    merchant_payment_reference: str
    payment_reference: str
    notification_token: str
    processed: bool
    created_at: str


class FolderIn(BaseModel):
    name: str
    client_id: Optional[str] = None
    agent_id: Optional[str] = None


class FolderUpdate(BaseModel):
    name: Optional[str] = None
    client_id: Optional[str] = None


class FolderOut(BaseModel):
    id: str
    name: str
    agent_id: Optional[str] = None
    client_id: Optional[str] = None
    quote_id: Optional[str] = None
    client_name: Optional[str] = None
    agent_name: Optional[str] = None
    created_at: str
    updated_at: str


class CampaignIn(BaseModel):
    name: str
    description: str = ""
    objectives: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    status: Optional[str] = None


class CampaignUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    objectives: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    status: Optional[str] = None


class CampaignOut(BaseModel):
    id: str
    name: str
    description: str = ""
    objectives: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    status: str
    created_by: Optional[str] = None
    leads_count: int = 0
    created_at: str
    updated_at: str


class LeadIn(BaseModel):
    first_name: str
    last_name: str
    email: str = ""
    phone: str = ""
    company: str = ""
    position: str = ""
    status: Optional[str] = None


class LeadUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    position: Optional[str] = None
    status: Optional[str] = None


class LeadOut(BaseModel):
    id: str
    campaign_id: str
    first_name: str
    last_name: str
    email: str = ""
    phone: str = ""
    company: str = ""
    position: str = ""
    status: str
    assigned_to: Optional[str] = None
    assigned_agent_name: Optional[str] = None
    campaign_name: Optional[str] = None
    created_at: str
    updated_at: str


class LeadImportOut(BaseModel):
    campaign_id: str
    imported_count: int
    skipped_count: int


class LeadAssignIn(BaseModel):
    agent_id: str


class LeadNoteIn(BaseModel):
    content: str


class LeadNoteOut(BaseModel):
    id: str
    lead_id: str
    agent_id: Optional[str] = None
    author_name: Optional[str] = None
    content: str
    created_at: str


class LeadTaskIn(BaseModel):
    title: str
    description: str = ""
    due_date: Optional[str] = None
    status: Optional[str] = None


class LeadTaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[str] = None
    status: Optional[str] = None


class LeadTaskOut(BaseModel):
    id: str
    lead_id: str
    agent_id: Optional[str] = None
    title: str
    description: str = ""
    status: str
    due_date: Optional[str] = None
    created_at: str
    updated_at: str


class NotificationOut(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    content: str = ""
    link: Optional[str] = None
    is_read: bool
    created_at: str


class NotificationUnreadCountOut(BaseModel):
    unread_count: int


class EmailStatsOut(BaseModel):
    stats_type: str
    start_date: str
    end_date: Optional[str] = None
    rows: List[Dict[str, Any]] = []
    chart: List[Dict[str, Any]] = []
    summary: Dict[str, float] = {}


class EmailTestIn(BaseModel):
    to: str
    subject: str
    html: str


class SurveyIn(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str = ""
    address: str = ""
    business_sector: str = ""


class SurveyOut(BaseModel):
    id: str
    client_id: Optional[str] = None
    first_name: str
    last_name: str
    email: str
    phone: str = ""
    address: str = ""
    business_sector: str = ""
    created_at: str


# ----------------------
# Utility functions
# ----------------------

def fetch_profile(conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Profile WHERE id = ?", (user_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return row


def find_profile(conn: sqlite3.Connection, user_id: Optional[str]) -> Optional[sqlite3.Row]:
    if not user_id:
        return None
    cur = conn.cursor()
    cur.execute("SELECT * FROM Profile WHERE id = ?", (user_id,))
    return cur.fetchone()


def display_name(row: Optional[Any]) -> Optional[str]:
    if not row:
        return None
    name = f"{row['first_name'] or ''} {row['last_name'] or ''}".strip()
    return name or row["email"]


def to_user_out(row: sqlite3.Row) -> UserOut:
    data = dict(row)
    data.pop("password_salt", None)
    data.pop("password_hash", None)
    for key in ("phone", "address", "business_sector", "company_name", "company_role", "manager_name"):
        data[key] = data.get(key) or ""
    data["first_name"] = data.get("first_name") or ""
    data["last_name"] = data.get("last_name") or ""
    data["language"] = data.get("language") or "fr"
    data["theme"] = data.get("theme") or "light"
    data["timezone"] = data.get("timezone") or "Europe/Paris"
    data["email_notifications"] = bool(data.get("email_notifications"))
    return UserOut(**data)


def auth_user_payload(row: sqlite3.Row) -> AuthUserOut:
    return AuthUserOut(
        id=row["id"],
        email=row["email"],
        role=row["role"],
        first_name=row["first_name"] or "",
        last_name=row["last_name"] or "",
    )


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    ).hex()


def create_password_credentials(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    return salt, hash_password(password, salt)


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not password or not salt or not expected_hash:
        return False
    actual_hash = hash_password(password, salt)
    return secrets.compare_digest(actual_hash, expected_hash)


def normalize_user_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or "@" not in value:
        raise HTTPException(status_code=400, detail="A valid email is required")
    return value


def normalize_user_role(role: Optional[str], allowed_roles: Optional[set[str]] = None) -> str:
    allowed = allowed_roles or ALLOWED_USER_ROLES
    value = (role or "").strip().lower()
    if value not in allowed:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(sorted(allowed))}")
    return value


def require_valid_password(password: Optional[str], *, required: bool) -> Optional[str]:
    value = (password or "").strip()
    if not value:
        if required:
            raise HTTPException(status_code=400, detail="Password is required")
        return None
    if len(value) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
        )
    return value


def require_matching_passwords(password: Optional[str], confirm_password: Optional[str]) -> str:
    if (password or "") != (confirm_password or ""):
        raise HTTPException(status_code=400, detail="Passwords do not match")
    return require_valid_password(password, required=True)


def revoke_user_sessions(
    conn: sqlite3.Connection, user_id: str, *, keep_session_id: Optional[str] = None
) -> None:
    cur = conn.cursor()
    if keep_session_id:
        cur.execute(
            "DELETE FROM AuthSession WHERE user_id = ? AND id != ?",
            (user_id, keep_session_id),
        )
        return
    cur.execute("DELETE FROM AuthSession WHERE user_id = ?", (user_id,))


def create_auth_session(conn: sqlite3.Connection, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    session_hash = sha256_hex(token)
    now = now_iso()
    expires_at = (datetime.utcnow() + timedelta(hours=SESSION_DURATION_HOURS)).isoformat()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AuthSession (id, user_id, session_hash, expires_at, created_at, last_seen_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), user_id, session_hash, expires_at, now, now),
    )
    conn.commit()
    return token


def set_session_cookie(response: Response, session_token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session_token,
        httponly=True,
        samesite=SESSION_COOKIE_SAMESITE,
        secure=SESSION_COOKIE_SECURE,
        max_age=SESSION_DURATION_HOURS * 3600,
        path="/",
    )


def get_session_user(conn: sqlite3.Connection, request: Request) -> Optional[sqlite3.Row]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    session_hash = sha256_hex(token)
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT u.*, s.id AS session_id
        FROM AuthSession s
        JOIN Profile u ON u.id = s.user_id
        WHERE s.session_hash = ? AND s.expires_at > ?
        ORDER BY s.created_at DESC
        LIMIT 1
        """,
        (session_hash, now),
    )
    row = cur.fetchone()
    if not row:
        return None
    cur.execute(
        "UPDATE AuthSession SET last_seen_at = ? WHERE session_hash = ?",
        (now_iso(), session_hash),
    )
    conn.commit()
    return row


def require_session_user(conn: sqlite3.Connection, request: Request) -> sqlite3.Row:
    user = get_session_user(conn, request)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_session_role(
    conn: sqlite3.Connection, request: Request, allowed_roles: set[str]
) -> sqlite3.Row:
    user = require_session_user(conn, request)
    if user_role(user) not in allowed_roles:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user


def user_role(user: Any) -> str:
    return (user["role"] or "").strip().lower()


def build_access_filter(user: Any, *, alias: str = "") -> tuple[List[str], List[Any]]:
    """Row scope for records carrying agent_id/client_id columns.

    Admins see everything, clients see what they received and every other
    role sees what it owns as agent.
    """
    role = user_role(user)
    if role == "admin":
        return [], []
    if role == "client":
        return [f"{alias}client_id = ?"], [user["id"]]
    return [f"{alias}agent_id = ?"], [user["id"]]


def require_record_access(user: Any, agent_id: Optional[str], client_id: Optional[str], label: str) -> None:
    if user_role(user) == "admin":
        return
    if user["id"] and user["id"] in {agent_id, client_id}:
        return
    raise HTTPException(status_code=403, detail=f"You do not have access to this {label}")


def require_visible_to_client(user: Any, status: Optional[str], label: str) -> None:
    # Clients only ever see drafts as missing.
    if user_role(user) == "client" and status == "draft":
        raise HTTPException(status_code=404, detail=f"{label} not found")


def require_client_profile(conn: sqlite3.Connection, client_id: Optional[str]) -> sqlite3.Row:
    if not client_id:
        raise HTTPException(status_code=400, detail="A client is required")
    client = find_profile(conn, client_id)
    if not client or user_role(client) != "client":
        raise HTTPException(status_code=404, detail="Client not found")
    return client


def parse_selected_extras(raw: Any) -> Dict[str, int]:
    if not raw:
        return {}
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, list):
        return {str(extra_id): 1 for extra_id in value if extra_id}
    if not isinstance(value, dict):
        return {}
    extras: Dict[str, int] = {}
    for extra_id, quantity in value.items():
        try:
            count = int(quantity)
        except (TypeError, ValueError):
            continue
        if count > 0:
            extras[str(extra_id)] = count
    return extras


def normalize_quantity(quantity: Optional[int]) -> int:
    value = 1 if quantity is None else int(quantity)
    if value < 1:
        raise HTTPException(status_code=400, detail="Quantity must be at least 1")
    return value


def fetch_offer(conn: sqlite3.Connection, offer_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Offer WHERE id = ?", (offer_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Offer not found")
    return row


def to_offer_extra_out(row: sqlite3.Row) -> OfferExtraOut:
    data = dict(row)
    data["description"] = data.get("description") or ""
    data["unit_price"] = float(data.get("unit_price") or 0)
    return OfferExtraOut(**data)


def to_offer_out(conn: sqlite3.Connection, row: sqlite3.Row) -> OfferOut:
    cur = conn.cursor()
    cur.execute(
        "SELECT feature FROM OfferFeature WHERE offer_id = ? ORDER BY created_at ASC, rowid ASC",
        (row["id"],),
    )
    features = [feature_row["feature"] for feature_row in cur.fetchall()]
    cur.execute("SELECT * FROM OfferExtra WHERE offer_id = ? ORDER BY name ASC", (row["id"],))
    extras = [to_offer_extra_out(extra) for extra in cur.fetchall()]
    data = dict(row)
    data["description"] = data.get("description") or ""
    data["category"] = data.get("category") or ""
    data["price_monthly"] = float(data.get("price_monthly") or 0)
    data["setup_fee"] = float(data.get("setup_fee") or 0)
    data["is_active"] = bool(data.get("is_active"))
    data["features"] = features
    data["extras"] = extras
    return OfferOut(**data)


def calculate_cart_total(items: List[Dict[str, Any]]) -> Dict[str, float]:
    setup_total = 0.0
    monthly_total = 0.0
    extras_total = 0.0
    for item in items:
        offer = item.get("offer") or {}
        quantity = int(item.get("quantity") or 0)
        setup_total += float(offer.get("setup_fee") or 0) * quantity
        monthly_total += float(offer.get("price_monthly") or 0) * quantity
        extra_prices = {
            extra["id"]: float(extra.get("unit_price") or 0)
            for extra in offer.get("extras") or []
        }
        for extra_id, extra_quantity in (item.get("selected_extras") or {}).items():
            extras_total += extra_prices.get(extra_id, 0.0) * int(extra_quantity)
    return {
        "setup_total": round(setup_total, 2),
        "monthly_total": round(monthly_total, 2),
        "extras_total": round(extras_total, 2),
    }


def calculate_offer_plate_totals(items: List[Dict[str, Any]]) -> Dict[str, float]:
    monthly_total = 0.0
    setup_total = 0.0
    for item in items:
        offer = item.get("offer") or {}
        quantity = int(item.get("quantity") or 0)
        monthly_total += float(offer.get("price_monthly") or 0) * quantity
        setup_total += float(offer.get("setup_fee") or 0) * quantity
    return {
        "monthly_total": round(monthly_total, 2),
        "setup_total": round(setup_total, 2),
    }


def calculate_quote_total(items: List[Dict[str, Any]]) -> float:
    # Setup fee is charged once per line, not per unit.
    total = 0.0
    for item in items:
        offer = item.get("offer") or {}
        quantity = int(item.get("quantity") or 0)
        total += float(offer.get("price_monthly") or 0) * quantity + float(offer.get("setup_fee") or 0)
    return round(total, 2)


def list_cart_item_outs(conn: sqlite3.Connection, user_id: str) -> List[CartItemOut]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT c.*
        FROM CartItem c
        JOIN Offer o ON o.id = c.offer_id
        WHERE c.user_id = ?
        ORDER BY c.created_at ASC, c.rowid ASC
        """,
        (user_id,),
    )
    items: List[CartItemOut] = []
    for row in cur.fetchall():
        offer = to_offer_out(conn, fetch_offer(conn, row["offer_id"]))
        items.append(
            CartItemOut(
                id=row["id"],
                offer_id=row["offer_id"],
                quantity=int(row["quantity"] or 0),
                selected_extras=parse_selected_extras(row["selected_extras"]),
                offer=offer,
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
        )
    return items


def fetch_cart_item(conn: sqlite3.Connection, user_id: str, item_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM CartItem WHERE id = ? AND user_id = ?", (item_id, user_id))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return row


def fetch_folder(conn: sqlite3.Connection, folder_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Folder WHERE id = ?", (folder_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Folder not found")
    return row


def create_folder_record(
    conn: sqlite3.Connection, *, name: str, agent_id: Optional[str], client_id: Optional[str]
) -> str:
    folder_id = str(uuid.uuid4())
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Folder (id, name, agent_id, client_id, quote_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (folder_id, name, agent_id, client_id, None, now, now),
    )
    return folder_id


def to_folder_out(conn: sqlite3.Connection, row: sqlite3.Row) -> FolderOut:
    data = dict(row)
    data["client_name"] = display_name(find_profile(conn, row["client_id"]))
    data["agent_name"] = display_name(find_profile(conn, row["agent_id"]))
    return FolderOut(**data)


def fetch_offer_plate(conn: sqlite3.Connection, plate_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM OfferPlate WHERE id = ?", (plate_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Offer plate not found")
    return row


def list_offer_plate_item_outs(conn: sqlite3.Connection, plate_id: str) -> List[OfferPlateItemOut]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM OfferPlateItem WHERE offer_plate_id = ? ORDER BY created_at ASC, rowid ASC",
        (plate_id,),
    )
    rows = cur.fetchall()
    items: List[OfferPlateItemOut] = []
    for row in rows:
        cur.execute("SELECT * FROM Offer WHERE id = ?", (row["offer_id"],))
        offer_row = cur.fetchone()
        items.append(
            OfferPlateItemOut(
                id=row["id"],
                offer_plate_id=row["offer_plate_id"],
                offer_id=row["offer_id"],
                quantity=int(row["quantity"] or 0),
                selected_extras=parse_selected_extras(row["selected_extras"]),
                offer=to_offer_out(conn, offer_row) if offer_row else None,
                created_at=row["created_at"],
            )
        )
    return items


def insert_offer_plate_items(
    conn: sqlite3.Connection, plate_id: str, items: List[OfferPlateItemIn]
) -> None:
    now = now_iso()
    cur = conn.cursor()
    for item in items:
        fetch_offer(conn, item.offer_id)
        cur.execute(
            """
            INSERT INTO OfferPlateItem (id, offer_plate_id, offer_id, quantity, selected_extras, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                plate_id,
                item.offer_id,
                normalize_quantity(item.quantity),
                json.dumps(parse_selected_extras(item.selected_extras)),
                now,
            ),
        )


def latest_quote_for_plate(conn: sqlite3.Connection, plate_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM Quote WHERE offer_plate_id = ? ORDER BY created_at DESC LIMIT 1",
        (plate_id,),
    )
    return cur.fetchone()


def to_offer_plate_out(conn: sqlite3.Connection, row: sqlite3.Row) -> OfferPlateOut:
    data = dict(row)
    data["client_name"] = display_name(find_profile(conn, row["client_id"]))
    data["agent_name"] = display_name(find_profile(conn, row["agent_id"]))
    return OfferPlateOut(**data)


def to_offer_plate_detail(conn: sqlite3.Connection, row: sqlite3.Row) -> OfferPlateDetailOut:
    items = list_offer_plate_item_outs(conn, row["id"])
    quote = latest_quote_for_plate(conn, row["id"])
    return OfferPlateDetailOut(
        **to_offer_plate_out(conn, row).dict(),
        items=items,
        totals=calculate_offer_plate_totals([item.dict() for item in items]),
        quote_id=quote["id"] if quote else None,
    )


def fetch_quote(conn: sqlite3.Connection, quote_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Quote WHERE id = ?", (quote_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Quote not found")
    return row


def to_quote_out(row: sqlite3.Row) -> QuoteOut:
    data = dict(row)
    data["total_amount"] = float(data.get("total_amount") or 0)
    data["payment_status"] = data.get("payment_status") or PAYMENT_STATUS_UNPAID
    return QuoteOut(**data)


def to_quote_list_out(conn: sqlite3.Connection, row: sqlite3.Row) -> QuoteListOut:
    plate_name = None
    if row["offer_plate_id"]:
        cur = conn.cursor()
        cur.execute("SELECT name FROM OfferPlate WHERE id = ?", (row["offer_plate_id"],))
        plate = cur.fetchone()
        plate_name = plate["name"] if plate else None
    return QuoteListOut(
        **to_quote_out(row).dict(),
        offer_plate_name=plate_name,
        client_name=display_name(find_profile(conn, row["client_id"])),
        agent_name=display_name(find_profile(conn, row["agent_id"])),
    )


def fetch_payment_info(conn: sqlite3.Connection, quote_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM PaymentInfo WHERE quote_id = ? ORDER BY created_at DESC LIMIT 1",
        (quote_id,),
    )
    return cur.fetchone()


def normalize_iban(iban: Optional[str]) -> str:
    value = "".join((iban or "").split()).upper()
    if len(value) < 15 or len(value) > 34 or not value[:2].isalpha():
        raise HTTPException(status_code=400, detail="IBAN is invalid")
    return value


def create_quote_record(
    conn: sqlite3.Connection,
    plate: sqlite3.Row,
    *,
    status: str,
    total_amount: Optional[float] = None,
) -> str:
    items = list_offer_plate_item_outs(conn, plate["id"])
    if not items:
        raise HTTPException(status_code=400, detail="Offer plate has no items")
    if total_amount is None:
        total_amount = calculate_quote_total([item.dict() for item in items])
    quote_id = str(uuid.uuid4())
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Quote (
            id, offer_plate_id, agent_id, client_id, status, payment_status, total_amount,
            payment_link_url, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            quote_id,
            plate["id"],
            plate["agent_id"],
            plate["client_id"],
            status,
            PAYMENT_STATUS_UNPAID,
            total_amount,
            None,
            now,
            now,
        ),
    )
    if plate["folder_id"]:
        cur.execute(
            "UPDATE Folder SET quote_id = ?, updated_at = ? WHERE id = ? AND quote_id IS NULL",
            (quote_id, now, plate["folder_id"]),
        )
    return quote_id


def quote_reference(quote_id: str) -> str:
    return quote_id[:8]


def parse_api_error_message(exc: urlerror.HTTPError) -> str:
    detail = ""
    try:
        detail = exc.read().decode("utf-8")
    except Exception:
        detail = str(exc)
    try:
        parsed = json.loads(detail)
    except (TypeError, ValueError):
        return detail or str(exc)
    if isinstance(parsed, dict):
        errors = parsed.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message") or detail)
        return str(parsed.get("message") or parsed.get("error") or parsed.get("detail") or detail)
    return detail


def sendgrid_api_request(
    method: str,
    path: str,
    *,
    body: Optional[Dict[str, Any]] = None,
    query: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    api_key = os.getenv("SENDGRID_API_KEY", "").strip()
    if not api_key:
        raise HTTPException(status_code=502, detail="SendGrid API key is not configured")

    url = f"{SENDGRID_API_BASE}{path}"
    if query:
        qs = urlparse.urlencode(query, doseq=True)
        url = f"{url}?{qs}"

    data = None
    headers = {"Authorization": f"Bearer {api_key}"}
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = urlrequest.Request(
        url,
        data=data,
        headers=headers,
        method=method.upper(),
    )
    try:
        with urlrequest.urlopen(req, timeout=20) as resp:
            raw = resp.read().decode("utf-8").strip()
            if not raw:
                return {}
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
            return {"results": parsed}
    except urlerror.HTTPError as exc:
        raise HTTPException(
            status_code=502,
            detail=f"SendGrid API error ({exc.code}): {parse_api_error_message(exc)}",
        )
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=502, detail=f"SendGrid API request failed: {exc}")


def send_sendgrid_email(
    to_email: str,
    subject: str,
    html: str,
    *,
    from_email: str,
    categories: Optional[List[str]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": from_email},
        "subject": subject,
        "content": [{"type": "text/html", "value": html}],
    }
    if categories:
        payload["categories"] = categories
    sendgrid_api_request("POST", "/v3/mail/send", body=payload)
    logger.info("Sent email %r to %s", subject, to_email)


def build_offer_plate_email_html(
    plate_name: str,
    client_name: Optional[str],
    agent_name: Optional[str],
    items: List[OfferPlateItemOut],
    link: str,
) -> str:
    rows = []
    for item in items:
        if not item.offer:
            continue
        monthly = item.offer.price_monthly * item.quantity
        setup = item.offer.setup_fee * item.quantity
        quantity_label = f" (x{item.quantity})" if item.quantity > 1 else ""
        setup_label = "Installation gratuite"
        if setup > 0:
            setup_label = f"Frais d'installation : {quote_pdf.format_eur(setup)}"
        description = item.offer.description
        if len(description) > 100:
            description = f"{description[:100]}..."
        rows.append(
            "<tr>"
            f"<td><strong>{escape(item.offer.name)}{quantity_label}</strong><br>{escape(description)}</td>"
            f"<td>{quote_pdf.format_eur(monthly)}/mois</td>"
            f"<td>{setup_label}</td>"
            "</tr>"
        )
    totals = calculate_offer_plate_totals([item.dict() for item in items])
    greeting = escape(client_name or "")
    sender = escape(agent_name or "Votre conseiller")
    return (
        "<html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<h2>Votre plaquette d'offres : {escape(plate_name)}</h2>"
        f"<p>Bonjour {greeting},</p>"
        f"<p>{sender} a préparé une sélection d'offres pour vous.</p>"
        "<table cellpadding=\"8\" style=\"border-collapse: collapse; width: 100%;\">"
        f"{''.join(rows)}"
        "</table>"
        f"<p><strong>Total mensuel : {quote_pdf.format_eur(totals['monthly_total'])}</strong><br>"
        f"Total frais d'installation : {quote_pdf.format_eur(totals['setup_total'])}</p>"
        f"<p><a href=\"{link}\">Consulter ma plaquette</a></p>"
        "</body></html>"
    )


def send_offer_plate_email(conn: sqlite3.Connection, plate: sqlite3.Row) -> None:
    client = find_profile(conn, plate["client_id"])
    if not client or not (client["email"] or "").strip():
        raise HTTPException(status_code=400, detail="Client email is missing")
    agent = find_profile(conn, plate["agent_id"])
    items = list_offer_plate_item_outs(conn, plate["id"])
    html = build_offer_plate_email_html(
        plate["name"],
        display_name(client),
        display_name(agent),
        items,
        f"{FRONTEND_BASE_URL}/offer-plates/{plate['id']}",
    )
    send_sendgrid_email(
        client["email"],
        f"Votre plaquette d'offres : {plate['name']}",
        html,
        from_email=os.getenv("SENDGRID_OFFERS_FROM", "plaquettes@i-numera.com").strip(),
        categories=["offer_plate"],
    )


def build_quote_email_html(quote: sqlite3.Row, client_name: Optional[str], payment_link: str) -> str:
    return (
        "<html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<h2>Votre devis #{quote_reference(quote['id'])} est approuvé</h2>"
        f"<p>Bonjour {escape(client_name or '')},</p>"
        "<p>Votre devis a été approuvé. Vous pouvez procéder au paiement en cliquant sur le bouton ci-dessous.</p>"
        f"<p>Montant total : <strong>{quote_pdf.format_eur(quote['total_amount'])}</strong></p>"
        f"<p><a href=\"{payment_link}\" style=\"background-color: #4CAF50; color: #fff; padding: 12px 24px; "
        "text-decoration: none; border-radius: 4px;\">Payer maintenant</a></p>"
        "</body></html>"
    )


def payment_link_api_request(body: Dict[str, Any]) -> Dict[str, Any]:
    url = os.getenv("PAYMENT_LINK_API_URL", PAYMENT_LINK_DEFAULT_API_URL).strip()
    if not url:
        raise HTTPException(status_code=502, detail="Payment link API is not configured")
    headers = {"Content-Type": "application/json"}
    api_key = os.getenv("PAYMENT_LINK_API_KEY", "").strip()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    req = urlrequest.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers=headers,
        method="POST",
    )
    try:
        with urlrequest.urlopen(req, timeout=20) as resp:
            raw = resp.read().decode("utf-8").strip()
    except urlerror.HTTPError as exc:
        raise HTTPException(
            status_code=502,
            detail=f"Payment API error ({exc.code}): {parse_api_error_message(exc)}",
        )
    except Exception as exc:
        raise HTTPException(status_code=502, detail=f"Payment API request failed: {exc}")
    try:
        parsed = json.loads(raw) if raw else {}
    except ValueError:
        raise HTTPException(status_code=502, detail=f"Invalid response from payment API: {raw[:200]}")
    if isinstance(parsed, dict):
        return parsed
    return {"results": parsed}


def extract_payment_link_url(data: Dict[str, Any]) -> Optional[str]:
    nested = data.get("data")
    containers = [data, nested if isinstance(nested, dict) else {}]
    for container in containers:
        for key in ("linkUrl", "paymentLink", "link", "url"):
            value = container.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def build_payment_link_body(
    quote: sqlite3.Row, client_email: str, overrides: PaymentLinkIn
) -> Dict[str, Any]:
    quote_id = quote["id"]
    amount = overrides.amount
    if amount is None:
        amount = int(round(float(quote["total_amount"] or 0) * 100))
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Payment amount must be greater than zero")
    body: Dict[str, Any] = {
        "change": {"currency": overrides.currency or "EUR", "rate": 1},
        "amount": amount,
        "failureUrl": overrides.failure_url or f"{FRONTEND_BASE_URL}/payment/failure?quoteId={quote_id}",
        "successUrl": overrides.success_url or f"{FRONTEND_BASE_URL}/payment/success?quoteId={quote_id}",
        "callbackUrl": overrides.callback_url or f"{FRONTEND_BASE_URL}/payment/callback/{quote_id}",
        "clientEmail": client_email,
        "paymentDescription": overrides.description or PAYMENT_LINK_DESCRIPTION,
        "methods": overrides.methods or list(PAYMENT_LINK_METHODS),
        "message": overrides.message or PAYMENT_LINK_DESCRIPTION,
    }
    notification_url = os.getenv("PAYMENT_NOTIFICATION_URL", "").strip()
    if notification_url:
        body["notificationUrl"] = notification_url
    return body


def create_payment_link_for_quote(
    conn: sqlite3.Connection, quote: sqlite3.Row, overrides: Optional[PaymentLinkIn] = None
) -> PaymentLinkOut:
    if quote["status"] not in PAYABLE_QUOTE_STATUSES:
        raise HTTPException(status_code=400, detail="Quote must be approved before requesting payment")
    if (quote["payment_status"] or PAYMENT_STATUS_UNPAID) == PAYMENT_STATUS_PAID:
        raise HTTPException(status_code=400, detail="Quote is already paid")
    client = find_profile(conn, quote["client_id"])
    if not client or not (client["email"] or "").strip():
        raise HTTPException(status_code=400, detail="Client email is missing")
    body = build_payment_link_body(quote, client["email"], overrides or PaymentLinkIn())
    response = payment_link_api_request(body)
    link_url = extract_payment_link_url(response)
    if link_url:
        cur = conn.cursor()
        cur.execute(
            "UPDATE Quote SET payment_link_url = ?, updated_at = ? WHERE id = ?",
            (link_url, now_iso(), quote["id"]),
        )
        conn.commit()
    logger.info(
        "Created payment link for quote %s (amount=%s)", quote["id"], body["amount"],
        extra={"quote_id": quote["id"]},
    )
    return PaymentLinkOut(quote_id=quote["id"], amount=body["amount"], link_url=link_url, response=response)


def mark_quote_paid(conn: sqlite3.Connection, quote_id: str) -> bool:
    cur = conn.cursor()
    cur.execute(
        "UPDATE Quote SET payment_status = ?, updated_at = ? WHERE id = ?",
        (PAYMENT_STATUS_PAID, now_iso(), quote_id),
    )
    if cur.rowcount == 0:
        return False
    quote = fetch_quote(conn, quote_id)
    if quote["agent_id"]:
        create_notification(
            conn,
            quote["agent_id"],
            kind="success",
            title="Paiement reçu",
            content=f"Le devis #{quote_reference(quote_id)} a été payé.",
            link=f"/quotes/{quote_id}",
        )
    return True


def fetch_notification(conn: sqlite3.Connection, notification_id: str, user_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM Notification WHERE id = ? AND user_id = ?",
        (notification_id, user_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Notification not found")
    return row


def to_notification_out(row: sqlite3.Row) -> NotificationOut:
    data = dict(row)
    data["content"] = data.get("content") or ""
    data["is_read"] = bool(data.get("is_read"))
    return NotificationOut(**data)


def send_notification_email_async(to_email: str, title: str, content: str, link: Optional[str]) -> None:
    if not os.getenv("SENDGRID_API_KEY", "").strip():
        return

    def worker() -> None:
        target = f"{FRONTEND_BASE_URL}{link}" if link and link.startswith("/") else link
        html = f"<p>{escape(content)}</p>"
        if target:
            html += f"<p><a href=\"{target}\">Ouvrir dans le portail</a></p>"
        try:
            send_sendgrid_email(
                to_email,
                title,
                html,
                from_email=os.getenv("SENDGRID_NOTIFICATIONS_FROM", "notifications@i-numera.com").strip(),
                categories=["notification"],
            )
        except Exception:
            logger.warning("Notification email to %s failed", to_email, exc_info=True)

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()


def create_notification(
    conn: sqlite3.Connection,
    user_id: str,
    *,
    kind: str = "info",
    title: str,
    content: str = "",
    link: Optional[str] = None,
) -> str:
    notification_type = (kind or "info").strip().lower()
    if notification_type not in NOTIFICATION_TYPES:
        notification_type = "info"
    notification_id = str(uuid.uuid4())
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Notification (id, user_id, type, title, content, link, is_read, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (notification_id, user_id, notification_type, title, content, link, 0, now_iso()),
    )
    recipient = find_profile(conn, user_id)
    if recipient and recipient["email_notifications"] and (recipient["email"] or "").strip():
        send_notification_email_async(recipient["email"], title, content, link)
    return notification_id


def notify_admins(conn: sqlite3.Connection, *, kind: str, title: str, content: str, link: Optional[str]) -> int:
    cur = conn.cursor()
    cur.execute("SELECT id FROM Profile WHERE role = 'admin'")
    admin_ids = [row["id"] for row in cur.fetchall()]
    for admin_id in admin_ids:
        create_notification(conn, admin_id, kind=kind, title=title, content=content, link=link)
    return len(admin_ids)


def fetch_campaign(conn: sqlite3.Connection, campaign_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Campaign WHERE id = ?", (campaign_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return row


def to_campaign_out(conn: sqlite3.Connection, row: sqlite3.Row) -> CampaignOut:
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) AS cnt FROM Lead WHERE campaign_id = ?", (row["id"],))
    data = dict(row)
    data["description"] = data.get("description") or ""
    data["objectives"] = data.get("objectives") or ""
    data["leads_count"] = cur.fetchone()["cnt"]
    return CampaignOut(**data)


def normalize_choice(value: Optional[str], allowed: set[str], label: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in allowed:
        raise HTTPException(status_code=400, detail=f"{label} must be one of: {', '.join(sorted(allowed))}")
    return normalized


def fetch_lead(conn: sqlite3.Connection, lead_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Lead WHERE id = ?", (lead_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Lead not found")
    return row


def active_lead_assignment(conn: sqlite3.Connection, lead_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM LeadAssignment
        WHERE lead_id = ? AND status = 'active'
        ORDER BY assigned_at DESC
        LIMIT 1
        """,
        (lead_id,),
    )
    return cur.fetchone()


def to_lead_out(conn: sqlite3.Connection, row: sqlite3.Row, *, campaign_name: Optional[str] = None) -> LeadOut:
    assignment = active_lead_assignment(conn, row["id"])
    data = dict(row)
    for key in ("email", "phone", "company", "position"):
        data[key] = data.get(key) or ""
    data["assigned_to"] = assignment["agent_id"] if assignment else None
    data["assigned_agent_name"] = (
        display_name(find_profile(conn, assignment["agent_id"])) if assignment else None
    )
    data["campaign_name"] = campaign_name
    return LeadOut(**data)


def require_lead_access(conn: sqlite3.Connection, user: Any, lead: sqlite3.Row) -> None:
    if user_role(user) in CAMPAIGN_MANAGER_ROLES:
        return
    assignment = active_lead_assignment(conn, lead["id"])
    if assignment and assignment["agent_id"] == user["id"]:
        return
    raise HTTPException(status_code=403, detail="You do not have access to this lead")


def insert_lead(conn: sqlite3.Connection, campaign_id: str, values: Dict[str, Any]) -> str:
    lead_id = str(uuid.uuid4())
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Lead (
            id, campaign_id, first_name, last_name, email, phone, company, position, status,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            lead_id,
            campaign_id,
            values["first_name"],
            values["last_name"],
            values.get("email") or "",
            values.get("phone") or "",
            values.get("company") or "",
            values.get("position") or "",
            values.get("status") or "new",
            now,
            now,
        ),
    )
    return lead_id


def fetch_lead_task(conn: sqlite3.Connection, lead_id: str, task_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM LeadTask WHERE id = ? AND lead_id = ?", (task_id, lead_id))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Task not found")
    return row


def to_lead_task_out(row: sqlite3.Row) -> LeadTaskOut:
    data = dict(row)
    data["description"] = data.get("description") or ""
    return LeadTaskOut(**data)


def spreadsheet_cell_text(value: Any) -> str:
    if value is None:
        return ""
    # Excel stores phone numbers and postcodes as floats.
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def load_spreadsheet_rows(path: Path) -> tuple[List[str], List[Dict[str, Any]]]:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        with path.open("r", encoding="utf-8", errors="ignore") as f:
            sample = f.read(2048)
            f.seek(0)
            delimiter = ","
            try:
                delimiter = csv.Sniffer().sniff(sample).delimiter
            except csv.Error:
                delimiter = ","
            reader = csv.DictReader(f, delimiter=delimiter)
            if not reader.fieldnames:
                raise HTTPException(status_code=400, detail="Lead file has no header row")
            rows = [dict(row) for row in reader]
            return list(reader.fieldnames), rows
    if suffix == ".xlsx":
        wb = openpyxl.load_workbook(path, data_only=True)
        ws = wb.active
        rows_iter = list(ws.iter_rows(values_only=True))
        if not rows_iter:
            raise HTTPException(status_code=400, detail="Lead file has no rows")
        headers = [str(cell).strip() if cell is not None else "" for cell in rows_iter[0]]
        if not any(headers):
            raise HTTPException(status_code=400, detail="Lead file has no header row")
        rows = []
        for row in rows_iter[1:]:
            row_dict: Dict[str, Any] = {}
            for idx, header in enumerate(headers):
                if header == "":
                    continue
                value = row[idx] if idx < len(row) else ""
                row_dict[header] = spreadsheet_cell_text(value)
            rows.append(row_dict)
        return headers, rows
    if suffix == ".xls":
        book = xlrd.open_workbook(path)
        sheet = book.sheet_by_index(0)
        if sheet.nrows == 0:
            raise HTTPException(status_code=400, detail="Lead file has no rows")
        headers = [str(cell.value).strip() for cell in sheet.row(0)]
        if not any(headers):
            raise HTTPException(status_code=400, detail="Lead file has no header row")
        rows = []
        for r in range(1, sheet.nrows):
            row_dict = {}
            for c, header in enumerate(headers):
                if header == "":
                    continue
                value = sheet.cell_value(r, c)
                row_dict[header] = spreadsheet_cell_text(value)
            rows.append(row_dict)
        return headers, rows
    raise HTTPException(
        status_code=400,
        detail="Unsupported file type. Please upload a .csv or .xls/.xlsx file.",
    )


def resolve_lead_headers(headers: List[str]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for header in headers:
        normalized = (header or "").strip().lower()
        for field, aliases in LEAD_HEADER_ALIASES.items():
            if field not in mapping and normalized in aliases:
                mapping[field] = header
    return mapping


def stats_metrics(entry: Dict[str, Any]) -> Dict[str, Any]:
    metrics = entry.get("metrics")
    return metrics if isinstance(metrics, dict) else entry


def sum_day_metrics(day: Dict[str, Any]) -> Dict[str, int]:
    totals = {"requests": 0, "delivered": 0, "opens": 0, "clicks": 0, "bounces": 0}
    for entry in day.get("stats") or []:
        metrics = stats_metrics(entry)
        for key in totals:
            totals[key] += int(metrics.get(key) or 0)
    return totals


def format_stats_for_charts(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    chart = []
    for day in rows:
        totals = sum_day_metrics(day)
        chart.append(
            {
                "date": day.get("date"),
                "delivered": totals["delivered"],
                "opens": totals["opens"],
                "clicks": totals["clicks"],
                "bounces": totals["bounces"],
            }
        )
    return chart


def calculate_summary_stats(rows: List[Dict[str, Any]]) -> Dict[str, float]:
    total_sent = 0
    total_delivered = 0
    total_opens = 0
    total_clicks = 0
    for day in rows:
        totals = sum_day_metrics(day)
        total_sent += totals["requests"]
        total_delivered += totals["delivered"]
        total_opens += totals["opens"]
        total_clicks += totals["clicks"]
    open_rate = 0.0
    click_rate = 0.0
    bounce_rate = 0.0
    if total_delivered > 0:
        open_rate = total_opens / total_delivered * 100
        click_rate = total_clicks / total_delivered * 100
        if total_sent > 0:
            bounce_rate = (total_sent - total_delivered) / total_sent * 100
    return {
        "total_sent": total_sent,
        "total_delivered": total_delivered,
        "total_opens": total_opens,
        "total_clicks": total_clicks,
        "open_rate": round(open_rate, 2),
        "click_rate": round(click_rate, 2),
        "bounce_rate": round(bounce_rate, 2),
    }


def fetch_email_stats(
    stats_type: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
    aggregated_by: Optional[str],
    categories: Optional[List[str]],
) -> EmailStatsOut:
    normalized_type = (stats_type or "global").strip().lower()
    if normalized_type not in SENDGRID_STATS_ENDPOINTS:
        normalized_type = "global"
    start = start_date or (datetime.utcnow() - timedelta(days=EMAIL_STATS_DEFAULT_DAYS)).date().isoformat()
    query: Dict[str, Any] = {"start_date": start, "aggregated_by": aggregated_by or "day"}
    if end_date:
        query["end_date"] = end_date
    if categories and normalized_type == "categories":
        query["categories"] = categories
    data = sendgrid_api_request(
        "GET",
        f"/v3/stats{SENDGRID_STATS_ENDPOINTS[normalized_type]}",
        query=query,
    )
    rows = data.get("results") or []
    return EmailStatsOut(
        stats_type=normalized_type,
        start_date=start,
        end_date=end_date,
        rows=rows,
        chart=format_stats_for_charts(rows),
        summary=calculate_summary_stats(rows),
    )


def build_cart_out(conn: sqlite3.Connection, user_id: str) -> CartOut:
    items = list_cart_item_outs(conn, user_id)
    totals = calculate_cart_total([item.dict() for item in items])
    return CartOut(items=items, totals=CartTotalsOut(**totals))


# ----------------------
# API routes
# ----------------------

@app.on_event("startup")
async def startup_event() -> None:
    setup_logging()
    init_db()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/auth/register", response_model=AuthUserOut)
def register(payload: RegisterIn, response: Response) -> AuthUserOut:
    email = normalize_user_email(payload.email)
    password = require_matching_passwords(payload.password, payload.confirm_password)
    role = normalize_user_role(payload.role or "client", SELF_SERVICE_ROLES)
    first_name = payload.first_name.strip()
    last_name = payload.last_name.strip()
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="First and last name are required")
    password_salt, password_hash = create_password_credentials(password)
    user_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO Profile (
                    id, email, first_name, last_name, phone, company_name, role, language, theme,
                    timezone, email_notifications, password_salt, password_hash, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    email,
                    first_name,
                    last_name,
                    payload.phone.strip(),
                    payload.company_name.strip(),
                    role,
                    "fr",
                    "light",
                    "Europe/Paris",
                    0,
                    password_salt,
                    password_hash,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already exists")
        conn.commit()
        session_token = create_auth_session(conn, user_id)
        user = fetch_profile(conn, user_id)

    set_session_cookie(response, session_token)
    logger.info("Registered %s profile %s", role, email)
    return auth_user_payload(user)


@app.post("/api/auth/login", response_model=AuthUserOut)
def login_with_password(payload: AuthLoginIn, response: Response) -> AuthUserOut:
    email = normalize_user_email(payload.email)
    password = payload.password
    if not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM Profile WHERE email = ?", (email,))
        user = cur.fetchone()
        if not user or not verify_password(
            password,
            user["password_salt"],
            user["password_hash"],
        ):
            logger.warning("Failed login for %s", email)
            raise HTTPException(status_code=401, detail="Invalid email or password.")
        session_token = create_auth_session(conn, user["id"])

    set_session_cookie(response, session_token)
    return auth_user_payload(user)


@app.get("/api/auth/me", response_model=AuthUserOut)
def get_auth_me(request: Request) -> AuthUserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
    return auth_user_payload(user)


@app.post("/api/auth/logout")
def logout(response: Response, request: Request) -> Dict[str, str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        session_hash = sha256_hex(token)
        with get_db() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM AuthSession WHERE session_hash = ?", (session_hash,))
            conn.commit()
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}


@app.get("/api/profile", response_model=UserOut)
def get_profile(request: Request) -> UserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = fetch_profile(conn, user["id"])
    return to_user_out(row)


@app.patch("/api/profile", response_model=UserOut)
def update_profile(payload: ProfileUpdateIn, request: Request) -> UserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        user_id = user["id"]
        fetch_profile(conn, user_id)
        updates = payload.dict(exclude_unset=True)
        password = updates.pop("password", None)
        confirm_password = updates.pop("confirm_password", None)
        values: Dict[str, Any] = {}
        for key, value in updates.items():
            if isinstance(value, str):
                value = value.strip()
            if key == "theme" and value not in {"light", "dark", "system"}:
                raise HTTPException(status_code=400, detail="Theme must be one of: dark, light, system")
            if key == "email_notifications":
                value = 1 if value else 0
            values[key] = value
        if password is not None:
            password_value = require_matching_passwords(password, confirm_password)
            values["password_salt"], values["password_hash"] = create_password_credentials(password_value)
        values["updated_at"] = now_iso()
        assignments = ", ".join(f"{key} = ?" for key in values)
        cur = conn.cursor()
        cur.execute(
            f"UPDATE Profile SET {assignments} WHERE id = ?",
            [*values.values(), user_id],
        )
        if password is not None:
            keep_session_id = user["session_id"] if "session_id" in user.keys() else None
            revoke_user_sessions(conn, user_id, keep_session_id=keep_session_id)
        conn.commit()
        row = fetch_profile(conn, user_id)
    return to_user_out(row)


@app.get("/api/users", response_model=List[UserOut])
def list_users(request: Request, role: Optional[str] = None) -> List[UserOut]:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        cur = conn.cursor()
        if role:
            cur.execute(
                "SELECT * FROM Profile WHERE role = ? ORDER BY last_name ASC, first_name ASC",
                (normalize_user_role(role),),
            )
        else:
            cur.execute("SELECT * FROM Profile ORDER BY last_name ASC, first_name ASC")
        rows = cur.fetchall()
    return [to_user_out(row) for row in rows]


@app.post("/api/users", response_model=UserOut)
def create_user(payload: UserIn, request: Request) -> UserOut:
    user_id = str(uuid.uuid4())
    now = now_iso()
    raw_password = require_valid_password(payload.password, required=True)
    password_salt, password_hash = create_password_credentials(raw_password)
    email = normalize_user_email(payload.email)
    role = normalize_user_role(payload.role)
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO Profile (
                    id, email, first_name, last_name, phone, company_name, company_role, role,
                    language, theme, timezone, email_notifications, password_salt, password_hash,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    email,
                    payload.first_name.strip(),
                    payload.last_name.strip(),
                    payload.phone.strip(),
                    payload.company_name.strip(),
                    payload.company_role.strip(),
                    role,
                    "fr",
                    "light",
                    "Europe/Paris",
                    0,
                    password_salt,
                    password_hash,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already exists")
        conn.commit()
        row = fetch_profile(conn, user_id)
    return to_user_out(row)


@app.patch("/api/users/{user_id}", response_model=UserOut)
def update_user(user_id: str, payload: UserUpdate, request: Request) -> UserOut:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        user = fetch_profile(conn, user_id)
        updates = payload.dict(exclude_unset=True)
        data = dict(user)
        password_changed = False
        for key, value in updates.items():
            if key == "password":
                continue
            if isinstance(value, str):
                value = value.strip()
            if key == "email" and value:
                value = normalize_user_email(value)
            if key == "role" and value:
                value = normalize_user_role(value)
            data[key] = value
        if "password" in updates:
            password_value = require_valid_password(updates.get("password"), required=True)
            password_salt, password_hash = create_password_credentials(password_value)
            data["password_salt"] = password_salt
            data["password_hash"] = password_hash
            password_changed = True
        data["updated_at"] = now_iso()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE Profile
                SET first_name = ?, last_name = ?, email = ?, phone = ?, company_name = ?,
                    company_role = ?, manager_name = ?, role = ?, password_salt = ?, password_hash = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    data["first_name"],
                    data["last_name"],
                    data["email"],
                    data.get("phone") or "",
                    data.get("company_name") or "",
                    data.get("company_role") or "",
                    data.get("manager_name") or "",
                    data["role"],
                    data.get("password_salt"),
                    data.get("password_hash"),
                    data["updated_at"],
                    user_id,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already exists")
        if password_changed:
            revoke_user_sessions(conn, user_id)
        conn.commit()
        row = fetch_profile(conn, user_id)
    return to_user_out(row)


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        session_user = require_session_role(conn, request, {"admin"})
        if session_user["id"] == user_id:
            raise HTTPException(status_code=400, detail="You cannot delete your own account")
        fetch_profile(conn, user_id)
        cur = conn.cursor()
        for table in ("Folder", "OfferPlate", "Quote"):
            cur.execute(f"UPDATE {table} SET agent_id = NULL WHERE agent_id = ?", (user_id,))
            cur.execute(f"UPDATE {table} SET client_id = NULL WHERE client_id = ?", (user_id,))
        cur.execute("UPDATE LeadAssignment SET status = 'reassigned' WHERE agent_id = ? AND status = 'active'", (user_id,))
        cur.execute("DELETE FROM CartItem WHERE user_id = ?", (user_id,))
        cur.execute("DELETE FROM Notification WHERE user_id = ?", (user_id,))
        revoke_user_sessions(conn, user_id)
        cur.execute("DELETE FROM Profile WHERE id = ?", (user_id,))
        conn.commit()
    return {"status": "deleted"}


@app.get("/api/offers", response_model=List[OfferOut])
def list_offers(
    request: Request,
    search: Optional[str] = None,
    category: Optional[str] = None,
    include_inactive: bool = False,
) -> List[OfferOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        clauses: List[str] = []
        params: List[Any] = []
        if not (include_inactive and user_role(user) == "admin"):
            clauses.append("is_active = 1")
        if search and search.strip():
            clauses.append("LOWER(name) LIKE ?")
            params.append(f"%{search.strip().lower()}%")
        if category and category.strip():
            clauses.append("category = ?")
            params.append(category.strip())
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM Offer {where_clause} ORDER BY category ASC, name ASC", params)
        return [to_offer_out(conn, row) for row in cur.fetchall()]


@app.get("/api/offers/categories", response_model=List[str])
def list_offer_categories(request: Request) -> List[str]:
    with get_db() as conn:
        require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT DISTINCT category FROM Offer
            WHERE is_active = 1 AND category IS NOT NULL AND category != ''
            ORDER BY category ASC
            """
        )
        return [row["category"] for row in cur.fetchall()]


@app.get("/api/offers/{offer_id}", response_model=OfferOut)
def get_offer(offer_id: str, request: Request) -> OfferOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        offer = fetch_offer(conn, offer_id)
        if not offer["is_active"] and user_role(user) != "admin":
            raise HTTPException(status_code=404, detail="Offer not found")
        return to_offer_out(conn, offer)


@app.get("/api/offers/{offer_id}/extras", response_model=List[OfferExtraOut])
def list_offer_extras(offer_id: str, request: Request) -> List[OfferExtraOut]:
    with get_db() as conn:
        require_session_user(conn, request)
        fetch_offer(conn, offer_id)
        cur = conn.cursor()
        cur.execute("SELECT * FROM OfferExtra WHERE offer_id = ? ORDER BY name ASC", (offer_id,))
        return [to_offer_extra_out(row) for row in cur.fetchall()]


@app.post("/api/offers", response_model=OfferOut)
def create_offer(payload: OfferIn, request: Request) -> OfferOut:
    name = payload.name.strip()
    category = payload.category.strip()
    if not name or not category:
        raise HTTPException(status_code=400, detail="Offer name and category are required")
    if payload.price_monthly < 0 or payload.setup_fee < 0:
        raise HTTPException(status_code=400, detail="Prices cannot be negative")
    offer_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Offer (
                id, name, description, category, image_url, price_monthly, setup_fee,
                is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                offer_id,
                name,
                payload.description.strip(),
                category,
                (payload.image_url or "").strip() or None,
                payload.price_monthly,
                payload.setup_fee,
                1 if payload.is_active else 0,
                now,
                now,
            ),
        )
        for feature in payload.features:
            if feature.strip():
                cur.execute(
                    "INSERT INTO OfferFeature (id, offer_id, feature, created_at) VALUES (?, ?, ?, ?)",
                    (str(uuid.uuid4()), offer_id, feature.strip(), now),
                )
        conn.commit()
        return to_offer_out(conn, fetch_offer(conn, offer_id))


@app.patch("/api/offers/{offer_id}", response_model=OfferOut)
def update_offer(offer_id: str, payload: OfferUpdate, request: Request) -> OfferOut:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        offer = fetch_offer(conn, offer_id)
        data = dict(offer)
        for key, value in payload.dict(exclude_unset=True).items():
            if isinstance(value, str):
                value = value.strip()
            if key in {"price_monthly", "setup_fee"} and value is not None and value < 0:
                raise HTTPException(status_code=400, detail="Prices cannot be negative")
            if key == "is_active":
                value = 1 if value else 0
            data[key] = value
        if not data.get("name") or not data.get("category"):
            raise HTTPException(status_code=400, detail="Offer name and category are required")
        data["updated_at"] = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE Offer
            SET name = ?, description = ?, category = ?, image_url = ?, price_monthly = ?,
                setup_fee = ?, is_active = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                data["name"],
                data.get("description") or "",
                data["category"],
                data.get("image_url") or None,
                data.get("price_monthly") or 0,
                data.get("setup_fee") or 0,
                data.get("is_active") or 0,
                data["updated_at"],
                offer_id,
            ),
        )
        conn.commit()
        return to_offer_out(conn, fetch_offer(conn, offer_id))


@app.delete("/api/offers/{offer_id}")
def deactivate_offer(offer_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_offer(conn, offer_id)
        cur = conn.cursor()
        cur.execute(
            "UPDATE Offer SET is_active = 0, updated_at = ? WHERE id = ?",
            (now_iso(), offer_id),
        )
        conn.commit()
    return {"status": "deactivated"}


@app.post("/api/offers/{offer_id}/features", response_model=OfferOut)
def add_offer_feature(offer_id: str, payload: OfferFeatureIn, request: Request) -> OfferOut:
    feature = payload.feature.strip()
    if not feature:
        raise HTTPException(status_code=400, detail="Feature is required")
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        offer = fetch_offer(conn, offer_id)
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO OfferFeature (id, offer_id, feature, created_at) VALUES (?, ?, ?, ?)",
            (str(uuid.uuid4()), offer_id, feature, now_iso()),
        )
        conn.commit()
        return to_offer_out(conn, offer)


@app.post("/api/offers/{offer_id}/extras", response_model=OfferExtraOut)
def add_offer_extra(offer_id: str, payload: OfferExtraIn, request: Request) -> OfferExtraOut:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Extra name is required")
    if payload.unit_price < 0:
        raise HTTPException(status_code=400, detail="Prices cannot be negative")
    extra_id = str(uuid.uuid4())
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_offer(conn, offer_id)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO OfferExtra (id, offer_id, name, description, unit_price, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (extra_id, offer_id, name, payload.description.strip(), payload.unit_price, now_iso()),
        )
        conn.commit()
        cur.execute("SELECT * FROM OfferExtra WHERE id = ?", (extra_id,))
        return to_offer_extra_out(cur.fetchone())


@app.get("/api/cart", response_model=CartOut)
def get_cart(request: Request) -> CartOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        return build_cart_out(conn, user["id"])


@app.post("/api/cart/items", response_model=CartOut)
def add_cart_item(payload: CartItemIn, request: Request) -> CartOut:
    quantity = normalize_quantity(payload.quantity)
    with get_db() as conn:
        user = require_session_user(conn, request)
        offer = fetch_offer(conn, payload.offer_id)
        if not offer["is_active"]:
            raise HTTPException(status_code=400, detail="Offer is not available")
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM CartItem WHERE user_id = ? AND offer_id = ?",
            (user["id"], payload.offer_id),
        )
        existing = cur.fetchone()
        now = now_iso()
        if existing:
            extras = (
                parse_selected_extras(payload.selected_extras)
                if payload.selected_extras is not None
                else parse_selected_extras(existing["selected_extras"])
            )
            cur.execute(
                "UPDATE CartItem SET quantity = ?, selected_extras = ?, updated_at = ? WHERE id = ?",
                (int(existing["quantity"] or 0) + quantity, json.dumps(extras), now, existing["id"]),
            )
        else:
            cur.execute(
                """
                INSERT INTO CartItem (id, user_id, offer_id, quantity, selected_extras, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    user["id"],
                    payload.offer_id,
                    quantity,
                    json.dumps(parse_selected_extras(payload.selected_extras)),
                    now,
                    now,
                ),
            )
        conn.commit()
        return build_cart_out(conn, user["id"])


@app.patch("/api/cart/items/{item_id}", response_model=CartOut)
def update_cart_item(item_id: str, payload: CartItemUpdate, request: Request) -> CartOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        item = fetch_cart_item(conn, user["id"], item_id)
        updates = payload.dict(exclude_unset=True)
        quantity = int(item["quantity"] or 1)
        extras = parse_selected_extras(item["selected_extras"])
        if "quantity" in updates:
            quantity = normalize_quantity(updates["quantity"])
        if "selected_extras" in updates:
            extras = parse_selected_extras(updates["selected_extras"])
        cur = conn.cursor()
        cur.execute(
            "UPDATE CartItem SET quantity = ?, selected_extras = ?, updated_at = ? WHERE id = ?",
            (quantity, json.dumps(extras), now_iso(), item_id),
        )
        conn.commit()
        return build_cart_out(conn, user["id"])


@app.delete("/api/cart/items/{item_id}", response_model=CartOut)
def remove_cart_item(item_id: str, request: Request) -> CartOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        fetch_cart_item(conn, user["id"], item_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM CartItem WHERE id = ?", (item_id,))
        conn.commit()
        return build_cart_out(conn, user["id"])


@app.delete("/api/cart")
def clear_cart(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute("DELETE FROM CartItem WHERE user_id = ?", (user["id"],))
        removed_count = cur.rowcount
        conn.commit()
    return {"status": "cleared", "removed_count": removed_count}


def require_plate_editable(conn: sqlite3.Connection, plate: sqlite3.Row) -> None:
    if latest_quote_for_plate(conn, plate["id"]):
        raise HTTPException(status_code=409, detail="Offer plate already has a quote")


def notify_offer_plate_sent(conn: sqlite3.Connection, plate_id: str, plate_name: str, client_id: str) -> None:
    create_notification(
        conn,
        client_id,
        kind="info",
        title="Nouvelle plaquette d'offres",
        content=f"Une nouvelle plaquette d'offres vous a été envoyée : {plate_name}",
        link=f"/offer-plates/{plate_id}",
    )


@app.post("/api/offer-plates", response_model=OfferPlateDetailOut)
def create_offer_plate(payload: OfferPlateCreate, request: Request) -> OfferPlateDetailOut:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Offer plate name is required")
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        client = require_client_profile(conn, payload.client_id)
        from_cart = payload.items is None
        if from_cart:
            items = [
                OfferPlateItemIn(
                    offer_id=cart_item.offer_id,
                    quantity=cart_item.quantity,
                    selected_extras=cart_item.selected_extras,
                )
                for cart_item in list_cart_item_outs(conn, user["id"])
            ]
        else:
            items = list(payload.items or [])
        if not items:
            raise HTTPException(status_code=400, detail="Offer plate must contain at least one offer")

        folder_id = payload.folder_id
        if folder_id:
            folder = fetch_folder(conn, folder_id)
            require_record_access(user, folder["agent_id"], folder["client_id"], "folder")
        else:
            folder_id = create_folder_record(
                conn, name=f"Dossier pour {name}", agent_id=user["id"], client_id=client["id"]
            )

        plate_id = str(uuid.uuid4())
        now = now_iso()
        status = "sent" if payload.send_email else "draft"
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO OfferPlate (
                id, name, agent_id, client_id, folder_id, status, sent_at, sent_method,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                plate_id,
                name,
                user["id"],
                client["id"],
                folder_id,
                status,
                now if payload.send_email else None,
                "email" if payload.send_email else None,
                now,
                now,
            ),
        )
        insert_offer_plate_items(conn, plate_id, items)
        if from_cart:
            cur.execute("DELETE FROM CartItem WHERE user_id = ?", (user["id"],))
        if payload.send_email:
            notify_offer_plate_sent(conn, plate_id, name, client["id"])
        conn.commit()
        plate = fetch_offer_plate(conn, plate_id)
        logger.info(
            "Created offer plate %s for client %s (%d items)", plate_id, client["id"], len(items),
            extra={"offer_plate_id": plate_id, "user_id": user["id"]},
        )
        if payload.send_email:
            try:
                send_offer_plate_email(conn, plate)
            except HTTPException as exc:
                logger.warning(
                    "Offer plate %s created but email failed: %s", plate_id, exc.detail,
                    extra={"offer_plate_id": plate_id},
                )
        return to_offer_plate_detail(conn, plate)


@app.get("/api/offer-plates", response_model=List[OfferPlateOut])
def list_offer_plates(request: Request, status: Optional[str] = None) -> List[OfferPlateOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        clauses, params = build_access_filter(user)
        if user_role(user) == "client":
            clauses.append("status != 'draft'")
        if status:
            clauses.append("status = ?")
            params.append(normalize_choice(status, OFFER_PLATE_STATUSES, "Status"))
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM OfferPlate {where_clause} ORDER BY created_at DESC", params)
        return [to_offer_plate_out(conn, row) for row in cur.fetchall()]


@app.get("/api/offer-plates/without-quote", response_model=List[OfferPlateOut])
def list_offer_plates_without_quote(request: Request) -> List[OfferPlateOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        clauses, params = build_access_filter(user, alias="p.")
        clauses.append("p.status != 'draft'")
        clauses.append("NOT EXISTS (SELECT 1 FROM Quote q WHERE q.offer_plate_id = p.id)")
        cur = conn.cursor()
        cur.execute(
            f"SELECT p.* FROM OfferPlate p WHERE {' AND '.join(clauses)} ORDER BY p.created_at DESC",
            params,
        )
        return [to_offer_plate_out(conn, row) for row in cur.fetchall()]


@app.get("/api/offer-plates/{plate_id}", response_model=OfferPlateDetailOut)
def get_offer_plate(plate_id: str, request: Request) -> OfferPlateDetailOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        if user_role(user) == "client" and plate["status"] == "sent":
            cur = conn.cursor()
            cur.execute(
                "UPDATE OfferPlate SET status = 'viewed', updated_at = ? WHERE id = ?",
                (now_iso(), plate_id),
            )
            conn.commit()
            plate = fetch_offer_plate(conn, plate_id)
        return to_offer_plate_detail(conn, plate)


@app.patch("/api/offer-plates/{plate_id}", response_model=OfferPlateDetailOut)
def update_offer_plate(plate_id: str, payload: OfferPlateUpdate, request: Request) -> OfferPlateDetailOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        data = dict(plate)
        for key, value in payload.dict(exclude_unset=True).items():
            if isinstance(value, str):
                value = value.strip()
            if key == "name" and not value:
                raise HTTPException(status_code=400, detail="Offer plate name is required")
            if key == "client_id":
                value = require_client_profile(conn, value)["id"]
            if key == "folder_id" and value:
                folder = fetch_folder(conn, value)
                require_record_access(user, folder["agent_id"], folder["client_id"], "folder")
            if key == "status":
                value = normalize_choice(value, OFFER_PLATE_STATUSES, "Status")
            if key == "folder_id":
                value = value or None
            data[key] = value
        data["updated_at"] = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE OfferPlate
            SET name = ?, client_id = ?, folder_id = ?, status = ?, updated_at = ?
            WHERE id = ?
            """,
            (data["name"], data["client_id"], data["folder_id"], data["status"], data["updated_at"], plate_id),
        )
        conn.commit()
        return to_offer_plate_detail(conn, fetch_offer_plate(conn, plate_id))


@app.put("/api/offer-plates/{plate_id}/items", response_model=OfferPlateDetailOut)
def replace_offer_plate_items(plate_id: str, payload: OfferPlateItemsIn, request: Request) -> OfferPlateDetailOut:
    if not payload.items:
        raise HTTPException(status_code=400, detail="Offer plate must contain at least one offer")
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        require_plate_editable(conn, plate)
        cur = conn.cursor()
        cur.execute("DELETE FROM OfferPlateItem WHERE offer_plate_id = ?", (plate_id,))
        insert_offer_plate_items(conn, plate_id, payload.items)
        cur.execute("UPDATE OfferPlate SET updated_at = ? WHERE id = ?", (now_iso(), plate_id))
        conn.commit()
        return to_offer_plate_detail(conn, fetch_offer_plate(conn, plate_id))


@app.post("/api/offer-plates/{plate_id}/items", response_model=OfferPlateDetailOut)
def add_offer_plate_items(plate_id: str, payload: OfferPlateItemsIn, request: Request) -> OfferPlateDetailOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        require_plate_editable(conn, plate)
        cur = conn.cursor()
        new_items: List[OfferPlateItemIn] = []
        for item in payload.items:
            quantity = normalize_quantity(item.quantity)
            cur.execute(
                "SELECT * FROM OfferPlateItem WHERE offer_plate_id = ? AND offer_id = ?",
                (plate_id, item.offer_id),
            )
            existing = cur.fetchone()
            if existing:
                cur.execute(
                    "UPDATE OfferPlateItem SET quantity = ? WHERE id = ?",
                    (int(existing["quantity"] or 0) + quantity, existing["id"]),
                )
            else:
                new_items.append(item)
        insert_offer_plate_items(conn, plate_id, new_items)
        cur.execute("UPDATE OfferPlate SET updated_at = ? WHERE id = ?", (now_iso(), plate_id))
        conn.commit()
        return to_offer_plate_detail(conn, fetch_offer_plate(conn, plate_id))


@app.patch("/api/offer-plates/{plate_id}/items/{item_id}", response_model=OfferPlateDetailOut)
def update_offer_plate_item(
    plate_id: str, item_id: str, payload: OfferPlateItemUpdate, request: Request
) -> OfferPlateDetailOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        require_plate_editable(conn, plate)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM OfferPlateItem WHERE id = ? AND offer_plate_id = ?",
            (item_id, plate_id),
        )
        item = cur.fetchone()
        if not item:
            raise HTTPException(status_code=404, detail="Offer plate item not found")
        updates = payload.dict(exclude_unset=True)
        quantity = int(item["quantity"] or 1)
        extras = parse_selected_extras(item["selected_extras"])
        if "quantity" in updates:
            quantity = normalize_quantity(updates["quantity"])
        if "selected_extras" in updates:
            extras = parse_selected_extras(updates["selected_extras"])
        cur.execute(
            "UPDATE OfferPlateItem SET quantity = ?, selected_extras = ? WHERE id = ?",
            (quantity, json.dumps(extras), item_id),
        )
        cur.execute("UPDATE OfferPlate SET updated_at = ? WHERE id = ?", (now_iso(), plate_id))
        conn.commit()
        return to_offer_plate_detail(conn, fetch_offer_plate(conn, plate_id))


@app.delete("/api/offer-plates/{plate_id}/items/{item_id}", response_model=OfferPlateDetailOut)
def remove_offer_plate_item(plate_id: str, item_id: str, request: Request) -> OfferPlateDetailOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        require_plate_editable(conn, plate)
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM OfferPlateItem WHERE id = ? AND offer_plate_id = ?",
            (item_id, plate_id),
        )
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Offer plate item not found")
        cur.execute("UPDATE OfferPlate SET updated_at = ? WHERE id = ?", (now_iso(), plate_id))
        conn.commit()
        return to_offer_plate_detail(conn, fetch_offer_plate(conn, plate_id))


@app.post("/api/offer-plates/{plate_id}/send", response_model=OfferPlateDetailOut)
def send_offer_plate(plate_id: str, payload: OfferPlateSendIn, request: Request) -> OfferPlateDetailOut:
    method = normalize_choice(payload.method, OFFER_PLATE_SEND_METHODS, "Send method")
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        client = require_client_profile(conn, payload.client_id or plate["client_id"])
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) AS cnt FROM OfferPlateItem WHERE offer_plate_id = ?", (plate_id,))
        if cur.fetchone()["cnt"] == 0:
            raise HTTPException(status_code=400, detail="Offer plate has no items")
        if method == "email":
            plate_data = dict(plate)
            plate_data["client_id"] = client["id"]
            send_offer_plate_email(conn, plate_data)
        now = now_iso()
        cur.execute(
            """
            UPDATE OfferPlate
            SET status = 'sent', sent_at = ?, sent_method = ?, client_id = ?, updated_at = ?
            WHERE id = ?
            """,
            (now, method, client["id"], now, plate_id),
        )
        notify_offer_plate_sent(conn, plate_id, plate["name"], client["id"])
        conn.commit()
        logger.info(
            "Offer plate %s sent to %s via %s", plate_id, client["id"], method,
            extra={"offer_plate_id": plate_id},
        )
        return to_offer_plate_detail(conn, fetch_offer_plate(conn, plate_id))


@app.get("/api/offer-plates/{plate_id}/pdf")
def download_offer_plate_pdf(plate_id: str, request: Request) -> FileResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        detail = to_offer_plate_detail(conn, plate)
        client = find_profile(conn, plate["client_id"])
        agent = find_profile(conn, plate["agent_id"])
    output_path = UPLOADS_DIR / "offer-plates" / f"{plate_id}.pdf"
    quote_pdf.generate_offer_plate_pdf(
        str(output_path),
        plate=detail.dict(),
        client=dict(client) if client else None,
        agent=dict(agent) if agent else None,
    )
    return FileResponse(
        path=str(output_path),
        filename=f"plaquette-{plate_id[:8]}.pdf",
        media_type="application/pdf",
    )


@app.post("/api/offer-plates/{plate_id}/quote", response_model=QuoteOut)
def create_quote_from_offer_plate(plate_id: str, request: Request) -> QuoteOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        require_plate_editable(conn, plate)
        quote_id = create_quote_record(conn, plate, status="pending")
        notify_admins(
            conn,
            kind="info",
            title="Devis à valider",
            content=f"Le devis #{quote_reference(quote_id)} attend votre validation.",
            link=f"/quotes/{quote_id}",
        )
        conn.commit()
        logger.info(
            "Created quote %s from offer plate %s", quote_id, plate_id,
            extra={"quote_id": quote_id, "offer_plate_id": plate_id},
        )
        return to_quote_out(fetch_quote(conn, quote_id))


@app.delete("/api/offer-plates/{plate_id}")
def delete_offer_plate(plate_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        require_plate_editable(conn, plate)
        cur = conn.cursor()
        cur.execute("DELETE FROM OfferPlateItem WHERE offer_plate_id = ?", (plate_id,))
        cur.execute("DELETE FROM OfferPlate WHERE id = ?", (plate_id,))
        conn.commit()
    return {"status": "deleted"}


def ensure_quote_transition_allowed(user: Any, current_status: str, new_status: str) -> None:
    role = user_role(user)
    if role == "admin":
        return
    transitions = CLIENT_QUOTE_TRANSITIONS if role == "client" else AGENT_QUOTE_TRANSITIONS
    if new_status not in {target for _, target in transitions}:
        raise HTTPException(status_code=403, detail="Insufficient permissions for this status change")
    if (current_status, new_status) not in transitions:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change quote status from {current_status} to {new_status}",
        )


def notify_quote_status_change(
    conn: sqlite3.Connection, quote: sqlite3.Row, new_status: str, actor: Any
) -> None:
    reference = quote_reference(quote["id"])
    link = f"/quotes/{quote['id']}"
    if new_status == "pending":
        notify_admins(
            conn,
            kind="info",
            title="Devis à valider",
            content=f"Le devis #{reference} attend votre validation.",
            link=link,
        )
    elif new_status == "sent" and quote["client_id"]:
        create_notification(
            conn,
            quote["client_id"],
            kind="info",
            title="Nouveau devis disponible",
            content=f"Le devis #{reference} est disponible.",
            link=link,
        )
    elif new_status in {"approved", "rejected", "accepted"} and quote["agent_id"] and quote["agent_id"] != actor["id"]:
        labels = {"approved": "approuvé", "rejected": "rejeté", "accepted": "accepté"}
        create_notification(
            conn,
            quote["agent_id"],
            kind="error" if new_status == "rejected" else "success",
            title=f"Devis {labels[new_status]}",
            content=f"Le devis #{reference} a été {labels[new_status]}.",
            link=link,
        )


@app.get("/api/quotes", response_model=List[QuoteListOut])
def list_quotes(request: Request, status: Optional[str] = None) -> List[QuoteListOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        clauses, params = build_access_filter(user)
        if user_role(user) == "client":
            clauses.append("status != 'draft'")
        if status:
            clauses.append("status = ?")
            params.append(normalize_choice(status, QUOTE_STATUSES, "Status"))
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM Quote {where_clause} ORDER BY created_at DESC", params)
        return [to_quote_list_out(conn, row) for row in cur.fetchall()]


@app.post("/api/quotes", response_model=QuoteOut)
def create_quote(payload: QuoteCreate, request: Request) -> QuoteOut:
    if payload.total_amount is not None and payload.total_amount < 0:
        raise HTTPException(status_code=400, detail="Total amount cannot be negative")
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        plate = fetch_offer_plate(conn, payload.offer_plate_id)
        require_record_access(user, plate["agent_id"], plate["client_id"], "offer plate")
        require_visible_to_client(user, plate["status"], "Offer plate")
        require_plate_editable(conn, plate)
        quote_id = create_quote_record(conn, plate, status="draft", total_amount=payload.total_amount)
        conn.commit()
        return to_quote_out(fetch_quote(conn, quote_id))


@app.get("/api/quotes/{quote_id}")
def get_quote_detail(quote_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        plate_out = None
        items: List[OfferPlateItemOut] = []
        if quote["offer_plate_id"]:
            cur = conn.cursor()
            cur.execute("SELECT * FROM OfferPlate WHERE id = ?", (quote["offer_plate_id"],))
            plate = cur.fetchone()
            if plate:
                plate_out = to_offer_plate_out(conn, plate)
                items = list_offer_plate_item_outs(conn, plate["id"])
        payment_info = fetch_payment_info(conn, quote_id)
        client = find_profile(conn, quote["client_id"])
        return {
            "quote": to_quote_list_out(conn, quote),
            "offer_plate": plate_out,
            "items": items,
            "totals": calculate_offer_plate_totals([item.dict() for item in items]),
            "payment_info": PaymentInfoOut(**dict(payment_info)) if payment_info else None,
            "client": to_user_out(client) if client else None,
        }


@app.patch("/api/quotes/{quote_id}/status", response_model=QuoteOut)
def update_quote_status(quote_id: str, payload: QuoteStatusIn, request: Request) -> QuoteOut:
    new_status = normalize_choice(payload.status, QUOTE_STATUSES, "Status")
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        ensure_quote_transition_allowed(user, quote["status"], new_status)
        cur = conn.cursor()
        cur.execute(
            "UPDATE Quote SET status = ?, updated_at = ? WHERE id = ?",
            (new_status, now_iso(), quote_id),
        )
        notify_quote_status_change(conn, quote, new_status, user)
        conn.commit()
        logger.info(
            "Quote %s status %s -> %s by %s", quote_id, quote["status"], new_status, user["id"],
            extra={"quote_id": quote_id, "user_id": user["id"]},
        )
        return to_quote_out(fetch_quote(conn, quote_id))


@app.patch("/api/quotes/{quote_id}/payment-status", response_model=QuoteOut)
def update_quote_payment_status(quote_id: str, payload: QuotePaymentStatusIn, request: Request) -> QuoteOut:
    payment_status = (payload.payment_status or "").strip()
    if payment_status not in PAYMENT_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Payment status must be one of: {', '.join(sorted(PAYMENT_STATUSES))}",
        )
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_quote(conn, quote_id)
        cur = conn.cursor()
        cur.execute(
            "UPDATE Quote SET payment_status = ?, updated_at = ? WHERE id = ?",
            (payment_status, now_iso(), quote_id),
        )
        conn.commit()
        return to_quote_out(fetch_quote(conn, quote_id))


@app.post("/api/quotes/{quote_id}/payment-info", response_model=PaymentInfoOut)
def create_payment_info(quote_id: str, payload: PaymentInfoIn, request: Request) -> PaymentInfoOut:
    bank_name = payload.bank_name.strip()
    bic = "".join(payload.bic.split()).upper()
    if not bank_name or not bic:
        raise HTTPException(status_code=400, detail="Bank name and BIC are required")
    iban = normalize_iban(payload.iban)
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        existing = fetch_payment_info(conn, quote_id)
        now = now_iso()
        cur = conn.cursor()
        if existing:
            cur.execute(
                "UPDATE PaymentInfo SET bank_name = ?, iban = ?, bic = ?, updated_at = ? WHERE id = ?",
                (bank_name, iban, bic, now, existing["id"]),
            )
        else:
            cur.execute(
                """
                INSERT INTO PaymentInfo (id, quote_id, bank_name, iban, bic, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), quote_id, bank_name, iban, bic, now, now),
            )
        conn.commit()
        return PaymentInfoOut(**dict(fetch_payment_info(conn, quote_id)))


@app.get("/api/quotes/{quote_id}/payment-info", response_model=PaymentInfoOut)
def get_payment_info(quote_id: str, request: Request) -> PaymentInfoOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        payment_info = fetch_payment_info(conn, quote_id)
        if not payment_info:
            raise HTTPException(status_code=404, detail="Payment information not found")
        return PaymentInfoOut(**dict(payment_info))


@app.get("/api/quotes/{quote_id}/client", response_model=UserOut)
def get_quote_client(quote_id: str, request: Request) -> UserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        client = find_profile(conn, quote["client_id"])
        if not client:
            raise HTTPException(status_code=404, detail="Quote has no client")
        return to_user_out(client)


@app.post("/api/quotes/{quote_id}/payment-link", response_model=PaymentLinkOut)
def create_quote_payment_link(
    quote_id: str, request: Request, payload: Optional[PaymentLinkIn] = None
) -> PaymentLinkOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        return create_payment_link_for_quote(conn, quote, payload)


@app.post("/api/quotes/{quote_id}/send-email")
def send_quote_email(quote_id: str, request: Request, payload: Optional[QuoteEmailIn] = None) -> Dict[str, Any]:
    payload = payload or QuoteEmailIn()
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        client = find_profile(conn, quote["client_id"])
        if not client or not (client["email"] or "").strip():
            raise HTTPException(status_code=400, detail="Client email is missing")
        payment_link = (payload.payment_link or "").strip()
        if not payment_link:
            payment_link = create_payment_link_for_quote(conn, quote).link_url or ""
        if not payment_link:
            raise HTTPException(status_code=502, detail="Payment API did not return a payment link")
        html = payload.html or build_quote_email_html(quote, display_name(client), payment_link)
        send_sendgrid_email(
            client["email"],
            f"Votre devis #{quote_reference(quote_id)} est approuvé",
            html,
            from_email=os.getenv("SENDGRID_QUOTES_FROM", "devis@i-numera.com").strip(),
            categories=["quote"],
        )
        status = quote["status"]
        if status == "approved":
            status = "sent"
            cur = conn.cursor()
            cur.execute(
                "UPDATE Quote SET status = ?, updated_at = ? WHERE id = ?",
                (status, now_iso(), quote_id),
            )
            notify_quote_status_change(conn, quote, status, user)
        conn.commit()
    return {"status": "sent", "quote_id": quote_id, "quote_status": status, "payment_link": payment_link}


@app.get("/api/quotes/{quote_id}/pdf")
def download_quote_pdf(quote_id: str, request: Request) -> FileResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        quote = fetch_quote(conn, quote_id)
        require_record_access(user, quote["agent_id"], quote["client_id"], "quote")
        require_visible_to_client(user, quote["status"], "Quote")
        items = list_offer_plate_item_outs(conn, quote["offer_plate_id"]) if quote["offer_plate_id"] else []
        client = find_profile(conn, quote["client_id"])
        agent = find_profile(conn, quote["agent_id"])
        payment_info = fetch_payment_info(conn, quote_id)
    output_path = UPLOADS_DIR / "quotes" / f"{quote_id}.pdf"
    quote_pdf.generate_quote_pdf(
        str(output_path),
        quote=to_quote_out(quote).dict(),
        items=[item.dict() for item in items],
        client=dict(client) if client else None,
        agent=dict(agent) if agent else None,
        payment_info=dict(payment_info) if payment_info else None,
    )
    return FileResponse(
        path=str(output_path),
        filename=f"devis-{quote_reference(quote_id)}.pdf",
        media_type="application/pdf",
    )


@app.delete("/api/quotes/{quote_id}")
def delete_quote(quote_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_quote(conn, quote_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM PaymentInfo WHERE quote_id = ?", (quote_id,))
        cur.execute("UPDATE Folder SET quote_id = NULL, updated_at = ? WHERE quote_id = ?", (now_iso(), quote_id))
        cur.execute("DELETE FROM Quote WHERE id = ?", (quote_id,))
        conn.commit()
    return {"status": "deleted"}


@app.post("/api/payments/notification")
def receive_payment_notification(payload: Dict[str, Any]) -> Dict[str, Any]:
    missing = [
        field
        for field in PAYMENT_NOTIFICATION_REQUIRED_FIELDS
        if payload.get(field) is None or str(payload.get(field)).strip() == ""
    ]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
    try:
        amount = float(payload["amount"])
        fee = float(payload["fee"])
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Amount and fee must be numeric")
    quote_id = (str(payload.get("quoteId") or "")).strip() or None
    payment_status = str(payload["paymentStatus"]).strip()
    notification_id = str(uuid.uuid4())
    processed = False
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO PaymentNotification (
                id, quote_id, payment_status, payment_method, amount, fee, client_name, description,
                merchant_payment_reference, payment_reference, notification_token, processed, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification_id,
                quote_id,
                payment_status,
                str(payload["paymentMethod"]).strip(),
                amount,
                fee,
                str(payload["clientName"]).strip(),
                str(payload["description"]).strip(),
                str(payload["merchantPaymentReference"]).strip(),
                str(payload["paymentReference"]).strip(),
                str(payload["notificationToken"]).strip(),
                0,
                now_iso(),
            ),
        )
        conn.commit()
        logger.info(
            "Stored payment notification %s (status=%s, quote=%s)",
            notification_id,
            payment_status,
            quote_id,
            extra={"quote_id": quote_id},
        )
        if quote_id and payment_status.upper() == "SUCCESS":
            try:
                if mark_quote_paid(conn, quote_id):
                    cur.execute(
                        "UPDATE PaymentNotification SET processed = 1 WHERE id = ?",
                        (notification_id,),
                    )
                    processed = True
                else:
                    logger.warning(
                        "Payment notification %s references unknown quote %s",
                        notification_id,
                        quote_id,
                        extra={"quote_id": quote_id},
                    )
                conn.commit()
            except sqlite3.Error:
                # Quote update and processed flag go together.
                conn.rollback()
                processed = False
                logger.exception("Failed to mark quote %s as paid", quote_id, extra={"quote_id": quote_id})
    return {
        "success": True,
        "message": "Payment notification received and stored",
        "notification_id": notification_id,
        "processed": processed,
    }


@app.post("/api/payments/callback/{quote_id}")
def payment_callback(quote_id: str, payload: PaymentCallbackIn) -> Dict[str, str]:
    status = (payload.status or "").strip().lower()
    if not status:
        raise HTTPException(status_code=400, detail="Status is required")
    with get_db() as conn:
        quote = fetch_quote(conn, quote_id)
        if status != "success":
            logger.info(
                "Payment callback for quote %s with status %s", quote_id, status,
                extra={"quote_id": quote_id},
            )
            return {"status": "ignored", "payment_status": quote["payment_status"] or PAYMENT_STATUS_UNPAID}
        mark_quote_paid(conn, quote_id)
        conn.commit()
    return {"status": "ok", "payment_status": PAYMENT_STATUS_PAID}


@app.get("/api/payments", response_model=List[PaymentNotificationOut])
def list_payment_history(request: Request) -> List[PaymentNotificationOut]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute("SELECT * FROM PaymentNotification ORDER BY created_at DESC")
        rows = cur.fetchall()
    return [
        PaymentNotificationOut(**{**dict(row), "processed": bool(row["processed"])})
        for row in rows
    ]


@app.get("/api/folders", response_model=List[FolderOut])
def list_folders(request: Request) -> List[FolderOut]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        if user_role(user) == "admin":
            cur.execute("SELECT * FROM Folder ORDER BY created_at DESC")
        else:
            cur.execute(
                "SELECT * FROM Folder WHERE agent_id = ? OR client_id = ? ORDER BY created_at DESC",
                (user["id"], user["id"]),
            )
        return [to_folder_out(conn, row) for row in cur.fetchall()]


@app.post("/api/folders", response_model=FolderOut)
def create_folder(payload: FolderIn, request: Request) -> FolderOut:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Folder name is required")
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        client_id = require_client_profile(conn, payload.client_id)["id"] if payload.client_id else None
        agent_id = user["id"]
        if payload.agent_id and user_role(user) == "admin":
            agent_id = fetch_profile(conn, payload.agent_id)["id"]
        folder_id = create_folder_record(conn, name=name, agent_id=agent_id, client_id=client_id)
        conn.commit()
        return to_folder_out(conn, fetch_folder(conn, folder_id))


@app.get("/api/folders/{folder_id}")
def get_folder_detail(folder_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        folder = fetch_folder(conn, folder_id)
        require_record_access(user, folder["agent_id"], folder["client_id"], "folder")
        cur = conn.cursor()
        plate_query = "SELECT * FROM OfferPlate WHERE folder_id = ?"
        if user_role(user) == "client":
            plate_query += " AND status != 'draft'"
        cur.execute(f"{plate_query} ORDER BY created_at DESC", (folder_id,))
        plates = cur.fetchall()
        quotes: List[QuoteListOut] = []
        for plate in plates:
            cur.execute(
                "SELECT * FROM Quote WHERE offer_plate_id = ? ORDER BY created_at DESC",
                (plate["id"],),
            )
            for quote in cur.fetchall():
                if user_role(user) == "client" and quote["status"] == "draft":
                    continue
                quotes.append(to_quote_list_out(conn, quote))
        return {
            "folder": to_folder_out(conn, folder),
            "offer_plates": [to_offer_plate_out(conn, plate) for plate in plates],
            "quotes": quotes,
        }


@app.patch("/api/folders/{folder_id}", response_model=FolderOut)
def update_folder(folder_id: str, payload: FolderUpdate, request: Request) -> FolderOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        folder = fetch_folder(conn, folder_id)
        require_record_access(user, folder["agent_id"], folder["client_id"], "folder")
        data = dict(folder)
        updates = payload.dict(exclude_unset=True)
        if "name" in updates:
            name = (updates["name"] or "").strip()
            if not name:
                raise HTTPException(status_code=400, detail="Folder name is required")
            data["name"] = name
        if "client_id" in updates:
            data["client_id"] = (
                require_client_profile(conn, updates["client_id"])["id"] if updates["client_id"] else None
            )
        cur = conn.cursor()
        cur.execute(
            "UPDATE Folder SET name = ?, client_id = ?, updated_at = ? WHERE id = ?",
            (data["name"], data["client_id"], now_iso(), folder_id),
        )
        conn.commit()
        return to_folder_out(conn, fetch_folder(conn, folder_id))


@app.delete("/api/folders/{folder_id}")
def delete_folder(folder_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        folder = fetch_folder(conn, folder_id)
        require_record_access(user, folder["agent_id"], folder["client_id"], "folder")
        cur = conn.cursor()
        cur.execute(
            "UPDATE OfferPlate SET folder_id = NULL, updated_at = ? WHERE folder_id = ?",
            (now_iso(), folder_id),
        )
        cur.execute("DELETE FROM Folder WHERE id = ?", (folder_id,))
        conn.commit()
    return {"status": "deleted"}


@app.get("/api/clients", response_model=List[UserOut])
def list_clients(request: Request, search: Optional[str] = None) -> List[UserOut]:
    with get_db() as conn:
        require_session_role(conn, request, STAFF_ROLES)
        clauses = ["role = 'client'"]
        params: List[Any] = []
        term = (search or "").strip().lower()
        if term:
            clauses.append(
                "(LOWER(first_name) LIKE ? OR LOWER(last_name) LIKE ? OR LOWER(email) LIKE ? "
                "OR LOWER(company_name) LIKE ?)"
            )
            params.extend([f"%{term}%"] * 4)
        cur = conn.cursor()
        cur.execute(
            f"SELECT * FROM Profile WHERE {' AND '.join(clauses)} ORDER BY last_name ASC, first_name ASC",
            params,
        )
        return [to_user_out(row) for row in cur.fetchall()]


@app.get("/api/clients/{client_id}")
def get_client_detail(client_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        require_session_role(conn, request, STAFF_ROLES)
        client = require_client_profile(conn, client_id)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Folder WHERE client_id = ? ORDER BY created_at DESC", (client_id,))
        folders = [to_folder_out(conn, row) for row in cur.fetchall()]
        cur.execute("SELECT * FROM Quote WHERE client_id = ? ORDER BY created_at DESC", (client_id,))
        quotes = [to_quote_list_out(conn, row) for row in cur.fetchall()]
        return {"client": to_user_out(client), "folders": folders, "quotes": quotes}


def count_rows(conn: sqlite3.Connection, query: str, params: tuple = ()) -> int:
    cur = conn.cursor()
    cur.execute(query, params)
    return int(cur.fetchone()[0] or 0)


@app.get("/api/dashboard")
def get_dashboard(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        role = user_role(user)
        cur = conn.cursor()
        if role == "admin":
            cur.execute("SELECT * FROM Quote WHERE status = 'pending' ORDER BY created_at DESC LIMIT 5")
            pending = [to_quote_list_out(conn, row) for row in cur.fetchall()]
            cur.execute("SELECT * FROM Quote ORDER BY created_at DESC LIMIT 10")
            recent = [to_quote_list_out(conn, row) for row in cur.fetchall()]
            return {
                "role": role,
                "stats": {
                    "users": count_rows(conn, "SELECT COUNT(*) FROM Profile"),
                    "quotes": count_rows(conn, "SELECT COUNT(*) FROM Quote"),
                    "folders": count_rows(conn, "SELECT COUNT(*) FROM Folder"),
                },
                "pending_quotes": pending,
                "recent_activity": recent,
            }
        if role == "client":
            cur.execute(
                """
                SELECT * FROM OfferPlate
                WHERE client_id = ? AND status != 'draft'
                ORDER BY created_at DESC
                LIMIT 5
                """,
                (user["id"],),
            )
            plates = [to_offer_plate_out(conn, row) for row in cur.fetchall()]
            return {
                "role": role,
                "stats": {
                    "folders": count_rows(conn, "SELECT COUNT(*) FROM Folder WHERE client_id = ?", (user["id"],)),
                    "quotes_awaiting_decision": count_rows(
                        conn,
                        "SELECT COUNT(*) FROM Quote WHERE client_id = ? AND status = 'sent'",
                        (user["id"],),
                    ),
                },
                "offer_plates": plates,
            }
        cur.execute(
            "SELECT * FROM Quote WHERE agent_id = ? AND status = 'approved' ORDER BY updated_at DESC LIMIT 5",
            (user["id"],),
        )
        approved = [to_quote_list_out(conn, row) for row in cur.fetchall()]
        cur.execute("SELECT * FROM Folder WHERE agent_id = ? ORDER BY created_at DESC LIMIT 5", (user["id"],))
        folders = [to_folder_out(conn, row) for row in cur.fetchall()]
        cur.execute("SELECT * FROM Quote WHERE agent_id = ? ORDER BY created_at DESC LIMIT 5", (user["id"],))
        quotes = [to_quote_list_out(conn, row) for row in cur.fetchall()]
        return {
            "role": role,
            "stats": {
                "folders": count_rows(conn, "SELECT COUNT(*) FROM Folder WHERE agent_id = ?", (user["id"],)),
                "quotes": count_rows(conn, "SELECT COUNT(*) FROM Quote WHERE agent_id = ?", (user["id"],)),
                "clients": count_rows(
                    conn,
                    "SELECT COUNT(DISTINCT client_id) FROM Quote WHERE agent_id = ? AND client_id IS NOT NULL",
                    (user["id"],),
                ),
            },
            "approved_quotes": approved,
            "recent_folders": folders,
            "recent_quotes": quotes,
        }


@app.get("/api/campaigns", response_model=List[CampaignOut])
def list_campaigns(request: Request) -> List[CampaignOut]:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Campaign ORDER BY created_at DESC")
        return [to_campaign_out(conn, row) for row in cur.fetchall()]


@app.post("/api/campaigns", response_model=CampaignOut)
def create_campaign(payload: CampaignIn, request: Request) -> CampaignOut:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Campaign name is required")
    status = normalize_choice(payload.status or "preparation", CAMPAIGN_STATUSES, "Status")
    with get_db() as conn:
        user = require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        campaign_id = str(uuid.uuid4())
        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Campaign (
                id, name, description, objectives, start_date, end_date, status, created_by,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                campaign_id,
                name,
                payload.description.strip(),
                payload.objectives.strip(),
                payload.start_date,
                payload.end_date,
                status,
                user["id"],
                now,
                now,
            ),
        )
        conn.commit()
        logger.info("Created campaign %s (%s)", campaign_id, name, extra={"campaign_id": campaign_id})
        return to_campaign_out(conn, fetch_campaign(conn, campaign_id))


@app.get("/api/campaigns/{campaign_id}", response_model=CampaignOut)
def get_campaign(campaign_id: str, request: Request) -> CampaignOut:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        return to_campaign_out(conn, fetch_campaign(conn, campaign_id))


@app.patch("/api/campaigns/{campaign_id}", response_model=CampaignOut)
def update_campaign(campaign_id: str, payload: CampaignUpdate, request: Request) -> CampaignOut:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        data = dict(fetch_campaign(conn, campaign_id))
        for key, value in payload.dict(exclude_unset=True).items():
            if isinstance(value, str):
                value = value.strip()
            if key == "name" and not value:
                raise HTTPException(status_code=400, detail="Campaign name is required")
            if key == "status":
                value = normalize_choice(value, CAMPAIGN_STATUSES, "Status")
            data[key] = value
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE Campaign
            SET name = ?, description = ?, objectives = ?, start_date = ?, end_date = ?, status = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                data["name"],
                data["description"],
                data["objectives"],
                data["start_date"],
                data["end_date"],
                data["status"],
                now_iso(),
                campaign_id,
            ),
        )
        conn.commit()
        return to_campaign_out(conn, fetch_campaign(conn, campaign_id))


@app.get("/api/campaigns/{campaign_id}/stats")
def get_campaign_stats(campaign_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        fetch_campaign(conn, campaign_id)
        cur = conn.cursor()
        cur.execute(
            "SELECT status, COUNT(*) AS cnt FROM Lead WHERE campaign_id = ? GROUP BY status",
            (campaign_id,),
        )
        by_status = {status: 0 for status in sorted(LEAD_STATUSES)}
        for row in cur.fetchall():
            by_status[row["status"] or "new"] = by_status.get(row["status"] or "new", 0) + row["cnt"]
        cur.execute(
            """
            SELECT COUNT(DISTINCT a.lead_id) AS cnt
            FROM LeadAssignment a
            JOIN Lead l ON l.id = a.lead_id
            WHERE l.campaign_id = ? AND a.status = 'active'
            """,
            (campaign_id,),
        )
        assigned = cur.fetchone()["cnt"]
    total = sum(by_status.values())
    conversion_rate = round(by_status.get("won", 0) / total * 100, 2) if total else 0.0
    return {
        "campaign_id": campaign_id,
        "total_leads": total,
        "assigned_leads": assigned,
        "leads_by_status": by_status,
        "conversion_rate": conversion_rate,
    }


@app.get("/api/campaigns/{campaign_id}/leads", response_model=List[LeadOut])
def list_campaign_leads(campaign_id: str, request: Request, status: Optional[str] = None) -> List[LeadOut]:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        campaign = fetch_campaign(conn, campaign_id)
        query = "SELECT * FROM Lead WHERE campaign_id = ?"
        params: List[Any] = [campaign_id]
        if status:
            query += " AND status = ?"
            params.append(normalize_choice(status, LEAD_STATUSES, "Status"))
        cur = conn.cursor()
        cur.execute(f"{query} ORDER BY created_at DESC", params)
        return [to_lead_out(conn, row, campaign_name=campaign["name"]) for row in cur.fetchall()]


@app.post("/api/campaigns/{campaign_id}/leads", response_model=LeadOut)
def create_lead(campaign_id: str, payload: LeadIn, request: Request) -> LeadOut:
    first_name = payload.first_name.strip()
    last_name = payload.last_name.strip()
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="Lead first and last name are required")
    status = normalize_choice(payload.status or "new", LEAD_STATUSES, "Status")
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        campaign = fetch_campaign(conn, campaign_id)
        lead_id = insert_lead(
            conn,
            campaign_id,
            {
                "first_name": first_name,
                "last_name": last_name,
                "email": normalize_user_email(payload.email) if payload.email.strip() else "",
                "phone": payload.phone.strip(),
                "company": payload.company.strip(),
                "position": payload.position.strip(),
                "status": status,
            },
        )
        conn.commit()
        return to_lead_out(conn, fetch_lead(conn, lead_id), campaign_name=campaign["name"])


@app.post("/api/campaigns/{campaign_id}/leads/import", response_model=LeadImportOut)
def import_leads(campaign_id: str, request: Request, file: UploadFile = File(...)) -> LeadImportOut:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        fetch_campaign(conn, campaign_id)

    import_dir = UPLOADS_DIR / "imports"
    import_dir.mkdir(parents=True, exist_ok=True)
    file_id = str(uuid.uuid4())
    safe_name = Path(file.filename or f"leads-{file_id}.csv").name
    target_path = import_dir / f"{file_id}-{safe_name}"
    with target_path.open("wb") as f:
        f.write(file.file.read())

    try:
        headers, rows = load_spreadsheet_rows(target_path)
    finally:
        target_path.unlink(missing_ok=True)
    mapping = resolve_lead_headers(headers)
    if "first_name" not in mapping or "last_name" not in mapping:
        raise HTTPException(status_code=400, detail="Lead file must include first name and last name columns")

    imported = 0
    skipped = 0
    with get_db() as conn:
        for row in rows:
            values = {field: str(row.get(header) or "").strip() for field, header in mapping.items()}
            if not values.get("first_name") or not values.get("last_name"):
                skipped += 1
                continue
            if values.get("email"):
                values["email"] = values["email"].lower()
            values["status"] = "new"
            insert_lead(conn, campaign_id, values)
            imported += 1
        conn.commit()
    logger.info(
        "Imported %d leads into campaign %s (%d skipped)", imported, campaign_id, skipped,
        extra={"campaign_id": campaign_id},
    )
    return LeadImportOut(campaign_id=campaign_id, imported_count=imported, skipped_count=skipped)


@app.get("/api/leads/mine", response_model=List[LeadOut])
def list_my_leads(request: Request) -> List[LeadOut]:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT l.*, c.name AS campaign_name
            FROM LeadAssignment a
            JOIN Lead l ON l.id = a.lead_id
            LEFT JOIN Campaign c ON c.id = l.campaign_id
            WHERE a.agent_id = ? AND a.status = 'active'
            ORDER BY a.assigned_at DESC
            """,
            (user["id"],),
        )
        rows = cur.fetchall()
        leads = []
        for row in rows:
            data = dict(row)
            campaign_name = data.pop("campaign_name", None)
            leads.append(to_lead_out(conn, fetch_lead(conn, data["id"]), campaign_name=campaign_name))
        return leads


@app.get("/api/leads/{lead_id}", response_model=LeadOut)
def get_lead(lead_id: str, request: Request) -> LeadOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        lead = fetch_lead(conn, lead_id)
        require_lead_access(conn, user, lead)
        campaign = fetch_campaign(conn, lead["campaign_id"])
        return to_lead_out(conn, lead, campaign_name=campaign["name"])


@app.patch("/api/leads/{lead_id}", response_model=LeadOut)
def update_lead(lead_id: str, payload: LeadUpdate, request: Request) -> LeadOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        lead = fetch_lead(conn, lead_id)
        require_lead_access(conn, user, lead)
        data = dict(lead)
        for key, value in payload.dict(exclude_unset=True).items():
            value = (value or "").strip()
            if key in {"first_name", "last_name"} and not value:
                raise HTTPException(status_code=400, detail="Lead first and last name are required")
            if key == "status":
                value = normalize_choice(value, LEAD_STATUSES, "Status")
            if key == "email" and value:
                value = value.lower()
            data[key] = value
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE Lead
            SET first_name = ?, last_name = ?, email = ?, phone = ?, company = ?, position = ?,
                status = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                data["first_name"],
                data["last_name"],
                data["email"],
                data["phone"],
                data["company"],
                data["position"],
                data["status"],
                now_iso(),
                lead_id,
            ),
        )
        conn.commit()
        campaign = fetch_campaign(conn, lead["campaign_id"])
        return to_lead_out(conn, fetch_lead(conn, lead_id), campaign_name=campaign["name"])


@app.post("/api/leads/{lead_id}/assign", response_model=LeadOut)
def assign_lead(lead_id: str, payload: LeadAssignIn, request: Request) -> LeadOut:
    with get_db() as conn:
        user = require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        lead = fetch_lead(conn, lead_id)
        agent = fetch_profile(conn, payload.agent_id)
        if user_role(agent) != "agent":
            raise HTTPException(status_code=400, detail="Leads can only be assigned to agents")
        cur = conn.cursor()
        cur.execute(
            "UPDATE LeadAssignment SET status = 'reassigned' WHERE lead_id = ? AND status = 'active'",
            (lead_id,),
        )
        cur.execute(
            """
            INSERT INTO LeadAssignment (id, lead_id, agent_id, created_by, status, assigned_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (str(uuid.uuid4()), lead_id, agent["id"], user["id"], "active", now_iso()),
        )
        create_notification(
            conn,
            agent["id"],
            kind="info",
            title="Nouveau lead assigné",
            content=f"Le lead {lead['first_name']} {lead['last_name']} vous a été assigné.",
            link=f"/leads/{lead_id}",
        )
        conn.commit()
        logger.info("Assigned lead %s to agent %s", lead_id, agent["id"])
        campaign = fetch_campaign(conn, lead["campaign_id"])
        return to_lead_out(conn, lead, campaign_name=campaign["name"])


@app.get("/api/leads/{lead_id}/notes", response_model=List[LeadNoteOut])
def list_lead_notes(lead_id: str, request: Request) -> List[LeadNoteOut]:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        require_lead_access(conn, user, fetch_lead(conn, lead_id))
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM LeadNote WHERE lead_id = ? ORDER BY created_at DESC, rowid DESC",
            (lead_id,),
        )
        return [
            LeadNoteOut(**dict(row), author_name=display_name(find_profile(conn, row["agent_id"])))
            for row in cur.fetchall()
        ]


@app.post("/api/leads/{lead_id}/notes", response_model=LeadNoteOut)
def create_lead_note(lead_id: str, payload: LeadNoteIn, request: Request) -> LeadNoteOut:
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Note content is required")
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        require_lead_access(conn, user, fetch_lead(conn, lead_id))
        note_id = str(uuid.uuid4())
        created_at = now_iso()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO LeadNote (id, lead_id, agent_id, content, created_at) VALUES (?, ?, ?, ?, ?)",
            (note_id, lead_id, user["id"], content, created_at),
        )
        conn.commit()
    return LeadNoteOut(
        id=note_id,
        lead_id=lead_id,
        agent_id=user["id"],
        author_name=display_name(user),
        content=content,
        created_at=created_at,
    )


@app.get("/api/leads/{lead_id}/tasks", response_model=List[LeadTaskOut])
def list_lead_tasks(lead_id: str, request: Request) -> List[LeadTaskOut]:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        require_lead_access(conn, user, fetch_lead(conn, lead_id))
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM LeadTask
            WHERE lead_id = ?
            ORDER BY due_date IS NULL, due_date ASC, created_at ASC
            """,
            (lead_id,),
        )
        return [to_lead_task_out(row) for row in cur.fetchall()]


@app.post("/api/leads/{lead_id}/tasks", response_model=LeadTaskOut)
def create_lead_task(lead_id: str, payload: LeadTaskIn, request: Request) -> LeadTaskOut:
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Task title is required")
    status = normalize_choice(payload.status or "pending", LEAD_TASK_STATUSES, "Status")
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        require_lead_access(conn, user, fetch_lead(conn, lead_id))
        task_id = str(uuid.uuid4())
        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO LeadTask (
                id, lead_id, agent_id, title, description, status, due_date, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (task_id, lead_id, user["id"], title, payload.description.strip(), status, payload.due_date, now, now),
        )
        conn.commit()
        return to_lead_task_out(fetch_lead_task(conn, lead_id, task_id))


@app.patch("/api/leads/{lead_id}/tasks/{task_id}", response_model=LeadTaskOut)
def update_lead_task(lead_id: str, task_id: str, payload: LeadTaskUpdate, request: Request) -> LeadTaskOut:
    with get_db() as conn:
        user = require_session_role(conn, request, STAFF_ROLES)
        require_lead_access(conn, user, fetch_lead(conn, lead_id))
        data = dict(fetch_lead_task(conn, lead_id, task_id))
        for key, value in payload.dict(exclude_unset=True).items():
            if isinstance(value, str):
                value = value.strip()
            if key == "title" and not value:
                raise HTTPException(status_code=400, detail="Task title is required")
            if key == "status":
                value = normalize_choice(value, LEAD_TASK_STATUSES, "Status")
            if key == "due_date":
                value = value or None
            data[key] = value
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE LeadTask
            SET title = ?, description = ?, status = ?, due_date = ?, updated_at = ?
            WHERE id = ?
            """,
            (data["title"], data["description"], data["status"], data["due_date"], now_iso(), task_id),
        )
        conn.commit()
        return to_lead_task_out(fetch_lead_task(conn, lead_id, task_id))


@app.get("/api/notifications", response_model=List[NotificationOut])
def list_notifications(request: Request, limit: int = 5) -> List[NotificationOut]:
    limit = max(1, min(int(limit or 5), 100))
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM Notification WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user["id"], limit),
        )
        return [to_notification_out(row) for row in cur.fetchall()]


@app.get("/api/notifications/unread-count", response_model=NotificationUnreadCountOut)
def get_notification_unread_count(request: Request) -> NotificationUnreadCountOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        unread = count_rows(
            conn,
            "SELECT COUNT(*) FROM Notification WHERE user_id = ? AND is_read = 0",
            (user["id"],),
        )
    return NotificationUnreadCountOut(unread_count=unread)


@app.post("/api/notifications/read-all")
def mark_all_notifications_read(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            "UPDATE Notification SET is_read = 1 WHERE user_id = ? AND is_read = 0",
            (user["id"],),
        )
        updated = cur.rowcount
        conn.commit()
    return {"status": "ok", "updated": updated}


@app.post("/api/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_notification_read(notification_id: str, request: Request) -> NotificationOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
        fetch_notification(conn, notification_id, user["id"])
        cur = conn.cursor()
        cur.execute("UPDATE Notification SET is_read = 1 WHERE id = ?", (notification_id,))
        conn.commit()
        return to_notification_out(fetch_notification(conn, notification_id, user["id"]))


@app.get("/api/email/stats", response_model=EmailStatsOut)
def get_email_stats(
    request: Request,
    stats_type: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    aggregated_by: Optional[str] = None,
    categories: Optional[str] = None,
) -> EmailStatsOut:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
    category_list = [value.strip() for value in (categories or "").split(",") if value.strip()]
    return fetch_email_stats(stats_type, start_date, end_date, aggregated_by, category_list or None)


@app.get("/api/campaigns/{campaign_id}/email-stats", response_model=EmailStatsOut)
def get_campaign_email_stats(
    campaign_id: str,
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    aggregated_by: Optional[str] = None,
) -> EmailStatsOut:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
        fetch_campaign(conn, campaign_id)
    return fetch_email_stats("categories", start_date, end_date, aggregated_by, [campaign_id])


@app.get("/api/email/activity")
def get_email_activity(request: Request, limit: int = 50, query: Optional[str] = None) -> Dict[str, Any]:
    with get_db() as conn:
        require_session_role(conn, request, CAMPAIGN_MANAGER_ROLES)
    params: Dict[str, Any] = {"limit": max(1, min(int(limit or 50), 1000))}
    if query:
        params["query"] = query
    data = sendgrid_api_request("GET", "/v3/messages", query=params)
    return {"messages": data.get("messages") or data.get("results") or []}


@app.post("/api/email/test")
def send_test_email(payload: EmailTestIn, request: Request) -> Dict[str, str]:
    to_email = normalize_user_email(payload.to)
    if not payload.subject.strip() or not payload.html.strip():
        raise HTTPException(status_code=400, detail="Subject and content are required")
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
    send_sendgrid_email(
        to_email,
        payload.subject.strip(),
        payload.html,
        from_email=os.getenv("SENDGRID_NOTIFICATIONS_FROM", "notifications@i-numera.com").strip(),
        categories=["test"],
    )
    return {"status": "sent"}


@app.post("/api/surveys", response_model=SurveyOut)
def submit_survey(payload: SurveyIn, request: Request) -> SurveyOut:
    first_name = payload.first_name.strip()
    last_name = payload.last_name.strip()
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="First and last name are required")
    email = normalize_user_email(payload.email)
    with get_db() as conn:
        user = require_session_role(conn, request, {"client"})
        survey_id = str(uuid.uuid4())
        created_at = now_iso()
        values = {
            "id": survey_id,
            "client_id": user["id"],
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "phone": payload.phone.strip(),
            "address": payload.address.strip(),
            "business_sector": payload.business_sector.strip(),
            "created_at": created_at,
        }
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Survey (
                id, client_id, first_name, last_name, email, phone, address, business_sector, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            tuple(values.values()),
        )
        conn.commit()
    return SurveyOut(**values)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
