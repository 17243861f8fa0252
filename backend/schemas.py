"""
Document schemas for the exam system.

Each top-level model corresponds to a MongoDB collection; the embedded models
mirror the nested sub-documents. Field names are kept in camelCase because
that is how they are stored and exchanged with clients.
"""
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from datetime import datetime

QuestionType = Literal["single", "multiple", "judge", "fill", "essay"]
QUESTION_TYPES = ("single", "multiple", "judge", "fill", "essay")


class Document(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[Any] = Field(default=None, alias="_id")

    def to_mongo(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=False)
        if data.get("_id") is None:
            data.pop("_id", None)
        return data


# Users Collection Schema
class Preferences(BaseModel):
    theme: Literal["light", "dark", "auto"] = "light"
    language: Literal["zh-CN", "en-US"] = "zh-CN"
    notifications: bool = True


class Security(BaseModel):
    twoFactorEnabled: bool = False
    loginAttempts: int = 0
    lastLoginAttempt: Optional[datetime] = None
    lockedUntil: Optional[datetime] = None


class UserStats(BaseModel):
    totalExams: int = 0
    totalStudyTime: int = 0  # seconds
    bestScore: float = 0
    averageScore: float = 0


class LastLogin(BaseModel):
    date: Optional[datetime] = None
    ip: Optional[str] = None
    userAgent: Optional[str] = None


class User(Document):
    username: str = Field(min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_一-龥]+$")
    email: EmailStr
    password: str
    role: Literal["user", "admin"] = "user"
    avatar: str = ""
    nickname: str = ""
    bio: str = Field(default="", max_length=500)
    preferences: Preferences = Field(default_factory=Preferences)
    security: Security = Field(default_factory=Security)
    stats: UserStats = Field(default_factory=UserStats)
    lastLogin: LastLogin = Field(default_factory=LastLogin)
    status: Literal["active", "inactive", "banned", "deleted"] = "active"
    isVerified: bool = False
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    updatedAt: datetime = Field(default_factory=datetime.utcnow)


# Questions Collection Schema
class Usage(BaseModel):
    totalAttempts: int = 0
    correctAttempts: int = 0
    correctRate: int = 0
    lastUsed: Optional[datetime] = None


class Moderation(BaseModel):
    isApproved: bool = True
    approvedBy: Optional[Any] = None
    approvedAt: Optional[datetime] = None
    rejectionReason: Optional[str] = None


class QuestionMetadata(BaseModel):
    viewCount: int = 0
    likeCount: int = 0
    dislikeCount: int = 0
    reportCount: int = 0


class Question(Document):
    title: str = Field(min_length=1, max_length=500)
    content: str = Field(min_length=1)
    type: QuestionType = "single"
    options: List[str] = []
    answer: Any
    analysis: str = ""
    difficulty: int = Field(default=2, ge=1, le=5)
    score: float = Field(default=1, ge=0)
    tags: List[str] = []
    category: str = "general"
    source: str = ""
    creator: Any
    status: Literal["draft", "published", "archived"] = "published"
    isPublic: bool = True
    usage: Usage = Field(default_factory=Usage)
    moderation: Moderation = Field(default_factory=Moderation)
    version: int = 1
    history: List[Dict[str, Any]] = []
    metadata: QuestionMetadata = Field(default_factory=QuestionMetadata)
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    updatedAt: datetime = Field(default_factory=datetime.utcnow)


# Mistakes Collection Schema
class QuestionSnapshot(BaseModel):
    title: str
    content: str
    type: QuestionType
    options: List[str] = []
    correctAnswer: Any
    analysis: str = ""
    difficulty: int = Field(default=2, ge=1, le=5)
    tags: List[str] = []
    category: str = "general"


class ReviewInfo(BaseModel):
    reviewCount: int = 0
    lastReviewDate: Optional[datetime] = None
    nextReviewDate: datetime = Field(default_factory=datetime.utcnow)
    reviewIntervals: List[int] = []  # days
    consecutiveCorrect: int = 0


class ErrorStats(BaseModel):
    totalAttempts: int = 1
    correctAttempts: int = 0
    errorRate: int = 100


class MistakeMetadata(BaseModel):
    isArchived: bool = False
    archiveDate: Optional[datetime] = None
    isPublic: bool = False
    viewCount: int = 0


class MistakeRecord(Document):
    user: Any
    question: Any
    questionSnapshot: QuestionSnapshot
    userAnswer: Any
    mistakeReason: str = ""
    tags: List[str] = []
    importance: int = Field(default=3, ge=1, le=5)
    masteryLevel: int = Field(default=1, ge=1, le=5)
    reviewStatus: Literal["unreviewed", "reviewing", "mastered"] = "unreviewed"
    reviewInfo: ReviewInfo = Field(default_factory=ReviewInfo)
    errorStats: ErrorStats = Field(default_factory=ErrorStats)
    source: Literal["exam", "practice", "review"] = "exam"
    examRecord: Optional[Any] = None
    metadata: MistakeMetadata = Field(default_factory=MistakeMetadata)
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    updatedAt: datetime = Field(default_factory=datetime.utcnow)


# Exam Records Collection Schema
class QuestionTypeCounts(BaseModel):
    single: int = 0
    multiple: int = 0
    judge: int = 0
    fill: int = 0
    essay: int = 0


class ExamConfig(BaseModel):
    totalQuestions: int = Field(ge=0)
    questionTypes: QuestionTypeCounts = Field(default_factory=QuestionTypeCounts)
    duration: int = 60  # minutes
    passingScore: float = 60
    isRandom: bool = True


class ExamResult(BaseModel):
    score: float = Field(ge=0, le=100)
    grade: Literal["excellent", "good", "pass", "fail"] = "fail"
    correctCount: int = Field(ge=0)
    wrongCount: int = Field(ge=0)
    unansweredCount: int = Field(default=0, ge=0)
    accuracy: int = Field(default=0, ge=0, le=100)
    isPassed: bool = False


class ExamQuestion(BaseModel):
    questionId: Any
    type: QuestionType
    content: str
    options: List[str] = []
    userAnswer: Any = None
    correctAnswer: Any
    isCorrect: bool
    isMarked: bool = False
    timeSpent: int = 0  # seconds
    difficulty: Optional[int] = None
    category: Optional[str] = None


class TypePerformance(BaseModel):
    correct: int = 0
    total: int = 0
    rate: int = 0


class TimeAnalysis(BaseModel):
    avgTimePerQuestion: int = 0
    fastestQuestion: int = 0
    slowestQuestion: int = 0


class ExamAnalysis(BaseModel):
    difficultyDistribution: Dict[str, int] = Field(default_factory=lambda: {"easy": 0, "medium": 0, "hard": 0})
    typePerformance: Dict[str, TypePerformance] = Field(
        default_factory=lambda: {t: TypePerformance() for t in QUESTION_TYPES}
    )
    timeAnalysis: TimeAnalysis = Field(default_factory=TimeAnalysis)
    weakAreas: List[str] = []
    strongAreas: List[str] = []


class DeviceInfo(BaseModel):
    userAgent: str = ""
    ipAddress: str = ""
    screenSize: str = ""
    browser: str = ""
    os: str = ""


class ExamMetadata(BaseModel):
    isPractice: bool = False
    source: Literal["normal", "mistake_review", "custom"] = "normal"
    tags: List[str] = []
    notes: str = ""


class ExamReview(BaseModel):
    isReviewed: bool = False
    reviewedAt: Optional[datetime] = None
    reviewNotes: str = ""
    reviewCount: int = 0


class Sharing(BaseModel):
    isPublic: bool = False
    shareCode: Optional[str] = None
    viewCount: int = 0


class ExamRecord(Document):
    user: Any
    title: str = "Smart Practice Exam"
    description: str = ""
    config: ExamConfig
    result: ExamResult
    questions: List[ExamQuestion] = []
    startTime: datetime = Field(default_factory=datetime.utcnow)
    endTime: datetime
    actualDuration: int = Field(ge=0)  # seconds
    status: Literal["completed", "incomplete", "abandoned"] = "completed"
    deviceInfo: DeviceInfo = Field(default_factory=DeviceInfo)
    metadata: ExamMetadata = Field(default_factory=ExamMetadata)
    analysis: ExamAnalysis = Field(default_factory=ExamAnalysis)
    review: ExamReview = Field(default_factory=ExamReview)
    sharing: Sharing = Field(default_factory=Sharing)
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    updatedAt: datetime = Field(default_factory=datetime.utcnow)


# UserData Collection Schema (embedded banks keyed by client-side string ids)
class PersonalQuestion(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: QuestionType
    content: str = Field(min_length=1)
    options: List[Any] = []
    answer: Any
    analysis: str = ""
    difficulty: int = Field(default=2, ge=1, le=5)
    tags: List[str] = []
    createdAt: datetime = Field(default_factory=datetime.utcnow)
    updatedAt: datetime = Field(default_factory=datetime.utcnow)
    usageCount: int = 0


class BankMistake(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    questionId: str
    isPublic: bool = False
    content: str = Field(min_length=1)
    type: QuestionType
    options: List[Any] = []
    answer: Any
    wrongAnswer: Any
    analysis: str = ""
    mistakeTime: datetime = Field(default_factory=datetime.utcnow)
    isImportant: bool = False
    reviewCount: int = 0
    lastReviewTime: Optional[datetime] = None
    tags: List[str] = []


class ExamEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    date: datetime = Field(default_factory=datetime.utcnow)
    score: float = Field(ge=0, le=100)
    grade: Literal["excellent", "good", "pass", "fail"]
    correctCount: int = Field(ge=0)
    wrongCount: int = Field(ge=0)
    totalQuestions: int = Field(ge=1)
    duration: int = Field(ge=1)
    questions: List[Any] = []
    type: Literal["normal", "practice", "mock"] = "normal"


class StudyStats(BaseModel):
    model_config = ConfigDict(extra="allow")

    totalQuestions: int = Field(default=0, ge=0)
    correctAnswers: int = Field(default=0, ge=0)
    totalStudyTime: int = Field(default=0, ge=0)
    examRecords: List[Dict[str, Any]] = []
    correctRate: int = Field(default=0, ge=0, le=100)
    averageScore: float = Field(default=0, ge=0, le=100)
    bestScore: float = Field(default=0, ge=0, le=100)


class UserData(Document):
    userId: Any
    personalQuestions: List[Dict[str, Any]] = []
    mistakeBank: List[Dict[str, Any]] = []
    studyStats: StudyStats = Field(default_factory=StudyStats)
    lastSync: datetime = Field(default_factory=datetime.utcnow)
    syncVersion: int = 1
    preferences: Dict[str, Any] = Field(default_factory=lambda: {
        "examSettings": {"autoSubmit": False, "showAnswerImmediately": True, "showAnalysis": True},
        "displaySettings": {"fontSize": 16, "theme": "light"},
    })


# Portable sync document
SyncDataType = Literal["publicQuestions", "personalQuestions", "mistakeBank", "studyStats"]
SYNC_DATA_TYPES = ("publicQuestions", "personalQuestions", "mistakeBank", "studyStats")


class SyncDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: Any
    deviceId: str = Field(min_length=1)
    exportTime: str = Field(min_length=1)
    dataTypes: Optional[List[SyncDataType]] = Field(default=None, min_length=1)
    stats: Dict[str, Any] = {}
    # the data fields are checked one by one on import so a bad one does not sink the rest
    publicQuestions: Any = None
    personalQuestions: Any = None
    mistakeBank: Any = None
    studyStats: Any = None
