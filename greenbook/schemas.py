from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime


# --- Tag ---

class TagResponse(BaseModel):
    id: int
    name: str
    model_config = ConfigDict(from_attributes=True)


# --- Auth ---

class UserRegister(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=6, max_length=128)
    nickname: str | None = Field(None, max_length=50)
    email: str | None = Field(None, max_length=255)
    phone: str | None = Field(None, max_length=20)


class UserLogin(BaseModel):
    username: str
    password: str


class WeChatLoginRequest(BaseModel):
    code: str = Field(min_length=1)
    phone: str | None = Field(None, max_length=20)
    nickname: str | None = Field(None, max_length=50)
    avatar: str | None = Field(None, max_length=255)


# --- User ---

class UserResponse(BaseModel):
    id: int
    username: str
    nickname: str | None = None
    avatar: str | None = None
    bio: str | None = None
    followers_count: int = 0
    following_count: int = 0
    posts_count: int = 0
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class UserDetail(UserResponse):
    articles: list["ArticleResponse"] = []


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserResponse


# --- Follow ---

class FollowRequest(BaseModel):
    user_id: int = Field(gt=0)


class FollowResponse(BaseModel):
    following: bool
    message: str


# --- Comment ---

class CommentCreate(BaseModel):
    content: str = Field(min_length=1)


class CommentResponse(BaseModel):
    id: int
    content: str
    user_id: int
    article_id: int
    like_count: int = 0
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# --- Article ---

class ArticleCreate(BaseModel):
    title: str = Field(max_length=200)
    content: str
    summary: str | None = Field(None, max_length=500)
    is_published: bool = True
    tags: list[str] = []  # tag names


class ArticleUpdate(BaseModel):
    title: str | None = Field(None, max_length=200)
    content: str | None = None
    summary: str | None = Field(None, max_length=500)
    is_published: bool | None = None
    tags: list[str] | None = None


class ArticleResponse(BaseModel):
    id: int
    title: str
    slug: str
    summary: str | None
    view_count: int
    like_count: int = 0
    favorite_count: int = 0
    comment_count: int = 0
    is_published: bool
    published_at: datetime | None
    created_at: datetime
    user_id: int
    author: UserResponse | None = None
    tags: list[TagResponse] = []
    model_config = ConfigDict(from_attributes=True)


class ArticleDetail(ArticleResponse):
    content: str
    comments: list[CommentResponse] = []
    is_liked: bool = False
    is_favorited: bool = False
    is_followed: bool = False
    is_author: bool = False


# --- Interactions ---

class ToggleResponse(BaseModel):
    result: str
    active: bool
    message: str


# --- Pagination ---

class PaginatedResponse(BaseModel):
    items: list
    total: int
    page: int
    page_size: int
    pages: int


# --- Metrics ---

class MetricsResponse(BaseModel):
    total_articles: int
    total_comments: int
    total_users: int
    active_likes: int
    active_favorites: int
    active_comment_likes: int
    cache_info: dict = {}
    background_jobs: dict = {}


# Required for forward-reference resolution (UserDetail.articles)
UserDetail.model_rebuild()
