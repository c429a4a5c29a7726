"""
Starter catalogue: the five exam domains, sample scenarios and achievements.
Loaded into the memory store at startup and into an empty database.
"""
import logging

from sqlalchemy import func, select, text
from sqlalchemy.orm import Session, sessionmaker

from cyberdefense.models.orm import Achievement, Domain, Scenario

logger = logging.getLogger(__name__)

DOMAINS = [
    {"id": 1, "name": "Threats, Attacks and Vulnerabilities",
     "description": "Security threats and vulnerability management",
     "exam_percentage": 24, "color": "#EF4444", "icon": "Shield"},
    {"id": 2, "name": "Architecture and Design",
     "description": "Secure architecture principles and design",
     "exam_percentage": 21, "color": "#F59E0B", "icon": "Building"},
    {"id": 3, "name": "Implementation",
     "description": "Security implementation and configuration",
     "exam_percentage": 25, "color": "#10B981", "icon": "Settings"},
    {"id": 4, "name": "Operations and Incident Response",
     "description": "Security operations and incident management",
     "exam_percentage": 16, "color": "#3B82F6", "icon": "AlertTriangle"},
    {"id": 5, "name": "Governance, Risk and Compliance",
     "description": "Risk management and compliance frameworks",
     "exam_percentage": 14, "color": "#8B5CF6", "icon": "FileText"},
]

SCENARIOS = [
    {
        "id": 1,
        "title": "Network Vulnerability Assessment",
        "description": "Conduct a comprehensive vulnerability scan using Nessus",
        "type": "lab",
        "domain_id": 1,
        "difficulty": "intermediate",
        "estimated_time": 45,
        "xp_reward": 150,
        "content": {
            "background": "Your organization needs a security assessment",
            "scenario": "Perform vulnerability scanning and analysis",
            "objectives": [
                "Identify exposed services",
                "Prioritise findings by severity",
            ],
            "questions": [
                {"id": 1, "question": "Which nmap flag enables service version detection?",
                 "options": ["-sS", "-sV", "-O", "-Pn"], "correct": 1,
                 "explanation": "-sV probes open ports to determine service and version info."},
                {"id": 2, "question": "Which CVSS score range is rated Critical?",
                 "options": ["4.0-6.9", "7.0-8.9", "9.0-10.0", "0.1-3.9"], "correct": 2,
                 "explanation": "CVSS v3 rates 9.0-10.0 as Critical."},
                {"id": 3, "question": "What should follow a credentialed scan finding a missing patch?",
                 "options": ["Ignore it", "Verify and remediate", "Disable logging", "Reboot the scanner"],
                 "correct": 1,
                 "explanation": "Findings are verified to rule out false positives, then remediated."},
            ],
            "codeExample": "nmap -sV -sC target_network",
        },
    },
    {
        "id": 2,
        "title": "Incident Response Planning",
        "description": "Develop and implement incident response procedures",
        "type": "scenario",
        "domain_id": 4,
        "difficulty": "advanced",
        "estimated_time": 60,
        "xp_reward": 200,
        "content": {
            "background": "Security incident requires immediate response",
            "scenario": "Follow incident response framework",
            "questions": [
                {"id": 1, "question": "Which phase comes directly after containment?",
                 "options": ["Preparation", "Eradication", "Identification", "Lessons learned"], "correct": 1,
                 "explanation": "Containment is followed by eradication, then recovery."},
                {"id": 2, "question": "When is the lessons-learned meeting held?",
                 "options": ["Before detection", "During containment", "After recovery", "Never"],
                 "correct": 2,
                 "explanation": "Lessons learned closes out the incident after recovery."},
            ],
            "codeExample": "Containment -> Eradication -> Recovery -> Lessons Learned",
        },
    },
    {
        "id": 3,
        "title": "Cryptography Implementation",
        "description": "Implement secure encryption protocols",
        "type": "lab",
        "domain_id": 3,
        "difficulty": "expert",
        "estimated_time": 90,
        "xp_reward": 250,
        "content": {
            "background": "Data protection requires encryption",
            "scenario": "Design cryptographic solution",
            "questions": [
                {"id": 1, "question": "Which mode provides authenticated encryption?",
                 "options": ["ECB", "CBC", "GCM", "CTR"], "correct": 2,
                 "explanation": "GCM combines CTR-mode encryption with GMAC authentication."},
            ],
            "codeExample": "AES-256 with proper key management",
        },
    },
]

ACHIEVEMENTS = [
    {"id": 1, "name": "First Steps", "description": "Complete your first scenario",
     "icon": "Trophy", "xp_reward": 50, "criteria": {"scenariosCompleted": 1}},
    {"id": 2, "name": "Security Expert", "description": "Complete 10 scenarios",
     "icon": "Star", "xp_reward": 200, "criteria": {"scenariosCompleted": 10}},
    {"id": 3, "name": "Perfectionist", "description": "Score 100% on a scenario",
     "icon": "Target", "xp_reward": 100, "criteria": {"perfectScore": True}},
    {"id": 4, "name": "Speed Runner", "description": "Complete a scenario in 15 minutes or less",
     "icon": "Zap", "xp_reward": 75, "criteria": {"scenariosCompleted": 1, "fastCompletion": 15}},
    {"id": 5, "name": "Dedicated Learner", "description": "Keep a 7 day streak",
     "icon": "Flame", "xp_reward": 150, "criteria": {"streak": 7}},
    {"id": 6, "name": "XP Hunter", "description": "Earn 1000 XP",
     "icon": "Award", "xp_reward": 100, "criteria": {"totalXP": 1000}},
    {"id": 7, "name": "Domain Master", "description": "Reach 100% progress in any domain",
     "icon": "Crown", "xp_reward": 250, "criteria": {"domainProgress": 100}},
    {"id": 8, "name": "Vulnerability Hunter", "description": "Complete every vulnerability scenario",
     "icon": "Bug", "xp_reward": 150, "criteria": {"categoryComplete": "vulnerability"}},
    {"id": 9, "name": "Incident Commander", "description": "Complete every incident response scenario",
     "icon": "Siren", "xp_reward": 150, "criteria": {"categoryComplete": "incident-response"}},
]


SEEDED_TABLES = (Domain.__tablename__, Scenario.__tablename__, Achievement.__tablename__)


def sync_id_sequences(db: Session) -> None:
    """
    Move the Postgres serial sequences past the seeded ids.

    Rows inserted with explicit ids do not advance the sequence, so without
    this the next admin insert would collide with id 1. SQLite hands out
    max(rowid) + 1 on its own and needs nothing.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    for table in SEEDED_TABLES:
        db.execute(text(
            f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), (SELECT MAX(id) FROM {table}))"
        ))


def seed_database(session_factory: sessionmaker) -> bool:
    """Insert the catalogue when the domains table is empty. Returns True if seeded."""
    with session_factory() as db:
        if db.scalar(select(func.count()).select_from(Domain)):
            return False
        db.add_all(Domain(**d) for d in DOMAINS)
        db.flush()
        db.add_all(Scenario(**s) for s in SCENARIOS)
        db.add_all(Achievement(**a) for a in ACHIEVEMENTS)
        db.flush()
        sync_id_sequences(db)
        db.commit()
    logger.info(f"Seeded {len(DOMAINS)} domains, {len(SCENARIOS)} scenarios, {len(ACHIEVEMENTS)} achievements")
    return True
