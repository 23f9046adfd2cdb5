import logging

from config import FACULTIES
from errors import UnknownFaculty
from models import AcademicClaim

logger = logging.getLogger(__name__)


def faculty_id_for(faculty: str) -> int:
    faculty_id = FACULTIES.get(faculty.strip())
    if faculty_id is None:
        raise UnknownFaculty(faculty=faculty, known=sorted(FACULTIES))
    return faculty_id


def claim_academic_details(store, voter_id: str, faculty: str, department: str, matric_no: str, level: str) -> AcademicClaim:
    """Bind a voter to a faculty through their matriculation number, once."""
    claim = AcademicClaim(
        voter_id=voter_id,
        matric_no=matric_no.strip().upper(),
        faculty_id=faculty_id_for(faculty),
        faculty_name=faculty.strip(),
        department=department.strip(),
        level=level.strip(),
    )
    store.claim_academic(claim)
    logger.info("Academic details verified for voter %s (faculty %s)", voter_id, claim.faculty_id)
    return claim
