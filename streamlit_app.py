import html
import streamlit as st
import requests
from typing import Dict, Any, Optional
from urllib.parse import urlencode
import pandas as pd
from docchat.config import get_settings

# Page config
st.set_page_config(
    page_title="DocChat",
    page_icon="📚",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Configuration
settings = get_settings()
API_BASE_URL = settings.api_base_url.rstrip("/")
WEB_BASE_URL = settings.web_base_url

# Custom CSS
st.markdown("""
<style>
    .main-header {
        font-size: 2.5rem;
        color: #1f77b4;
        text-align: center;
        margin-bottom: 0.5rem;
    }
    .sub-header {
        text-align: center;
        color: #6c757d;
        margin-bottom: 2rem;
    }
    .error-details {
        background-color: #fdecea;
        padding: 1rem;
        border-radius: 0.5rem;
        border-left: 4px solid #dc3545;
    }
</style>
""", unsafe_allow_html=True)


class ApiError(Exception):
    def __init__(self, status_code: int, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


def make_api_request(endpoint: str, method: str = "GET", data: dict = None, files: dict = None) -> Any:
    """Make an authenticated API request, raising ApiError on failure"""
    url = f"{API_BASE_URL}{endpoint}"
    headers = {}
    if st.session_state.get("session_token"):
        headers["Authorization"] = f"Bearer {st.session_state['session_token']}"

    try:
        if method == "GET":
            response = requests.get(url, params=data, headers=headers, timeout=30)
        elif method == "POST":
            if files:
                response = requests.post(url, files=files, headers=headers, timeout=300)
            else:
                response = requests.post(url, json=data, headers=headers, timeout=120)
        elif method == "DELETE":
            response = requests.delete(url, headers=headers, timeout=30)
        else:
            raise ValueError(f"Unsupported method: {method}")
    except requests.exceptions.RequestException as e:
        raise ApiError(0, f"API request failed: {e}")

    if not response.ok:
        try:
            body = response.json()
        except ValueError:
            body = {}
        raise ApiError(response.status_code, body.get("error") or response.reason, body.get("details"))

    return response.json()


def load_session() -> Optional[Dict[str, Any]]:
    """Pick up a token handed back by the sign-in redirect and validate it"""
    token = st.query_params.get("session_token")
    if token:
        st.session_state["session_token"] = token
        del st.query_params["session_token"]

    if not st.session_state.get("session_token"):
        return None

    try:
        return make_api_request("/auth/session")
    except ApiError as e:
        if e.status_code == 401:
            st.session_state.pop("session_token", None)
            return None
        raise


def sign_out():
    try:
        make_api_request("/auth/signout", "POST")
    except ApiError:
        pass
    for key in ("session_token", "messages"):
        st.session_state.pop(key, None)


def main():
    """Main application"""
    if st.query_params.get("error"):
        auth_error_page(st.query_params.get("error"), st.query_params.get("error_description"))
        return

    try:
        session = load_session()
    except ApiError as e:
        st.error(f"⚠️ {e.message}")
        st.code("python run_api.py", language="bash")
        st.stop()

    if session is None:
        signin_page()
        return

    user = session["user"]
    st.sidebar.title("Account")
    st.sidebar.write(f"Signed in as **{user.get('name') or user['email']}**")
    st.sidebar.caption(user["email"])
    if st.sidebar.button("Sign out"):
        sign_out()
        st.rerun()

    dashboard_page(user)


def signin_page():
    """Sign-in page"""
    st.markdown('<h1 class="main-header">📚 DocChat</h1>', unsafe_allow_html=True)
    st.markdown('<p class="sub-header">Upload and chat with your PDF documents</p>', unsafe_allow_html=True)

    try:
        providers = make_api_request("/auth/providers")
    except ApiError as e:
        st.error(f"⚠️ {e.message}")
        return

    if not providers:
        st.warning("No identity providers are configured.")
        return

    for provider in providers:
        signin_url = f"{provider['signinUrl']}?{urlencode({'callbackUrl': WEB_BASE_URL})}"
        st.link_button(f"Sign in with {provider['name']}", signin_url, use_container_width=True)


def error_details_html(description: str) -> str:
    return f'<div class="error-details"><b>Error Details:</b><br>{html.escape(description)}</div>'


def welcome_header_html(name: Optional[str]) -> str:
    return f'<h1 class="main-header">Welcome back, {html.escape(name or "")}</h1>'


def auth_error_page(error: str, description: Optional[str]):
    """Authentication error page"""
    st.header("Authentication Error")

    try:
        info = make_api_request("/auth/error", "GET", {"error": error, "error_description": description})
    except ApiError:
        info = {"message": "There was an error during authentication. Please try again."}

    st.write(info["message"])
    if description:
        st.markdown(error_details_html(description), unsafe_allow_html=True)
    if info.get("debug"):
        with st.expander("Debug Info"):
            st.json(info["debug"])

    st.link_button("Return to Sign In", WEB_BASE_URL)


def dashboard_page(user: Dict[str, Any]):
    """Upload and chat side by side"""
    st.markdown(welcome_header_html(user.get("name")), unsafe_allow_html=True)
    st.markdown('<p class="sub-header">Upload and chat with your PDF documents</p>', unsafe_allow_html=True)

    col1, col2 = st.columns(2)

    with col1:
        st.subheader("📤 Upload Documents")
        upload_panel()
        st.subheader("📚 Uploaded Documents")
        documents_panel()

    with col2:
        st.subheader("💬 Chat with Documents")
        chat_panel()


def upload_panel():
    uploaded_files = st.file_uploader(
        "Drag and drop PDF files here, or click to select files",
        type=["pdf"],
        accept_multiple_files=True,
        key=f"uploader_{st.session_state.get('uploader_key', 0)}"
    )

    if uploaded_files and st.button("🚀 Upload", type="primary"):
        with st.spinner("Processing PDF..."):
            for file in uploaded_files:
                files_data = {"file": (file.name, file.getvalue(), "application/pdf")}
                try:
                    result = make_api_request("/api/upload", "POST", files=files_data)
                    st.success(f"✅ {file.name}: {result['chunkCount']} chunks indexed")
                except ApiError as e:
                    st.error(f"❌ {file.name}: {e.message}")
                    if e.details:
                        st.caption(e.details)

        # New widget key empties the uploader
        st.session_state["uploader_key"] = st.session_state.get("uploader_key", 0) + 1


def documents_panel():
    try:
        documents = make_api_request("/api/documents")
    except ApiError as e:
        st.error(e.message)
        return

    if not documents:
        st.info("No documents uploaded yet")
        return

    df = pd.DataFrame(documents)
    df["createdAt"] = pd.to_datetime(df["createdAt"]).dt.strftime("%Y-%m-%d %H:%M")

    for row in df.itertuples(index=False):
        name_col, date_col, action_col = st.columns([3, 2, 1])
        with name_col:
            st.write(f"📄 {row.name}")
        with date_col:
            st.caption(row.createdAt)
        with action_col:
            if st.button("Delete", key=f"delete_{row.id}"):
                try:
                    make_api_request(f"/api/documents/{row.id}", "DELETE")
                    st.rerun()
                except ApiError as e:
                    st.error(e.message)


def chat_panel():
    messages = st.session_state.setdefault("messages", [])

    for message in messages:
        with st.chat_message(message["role"]):
            st.markdown(message["content"])
            if message.get("sources"):
                st.caption(format_sources(message["sources"]))

    prompt = st.chat_input("Ask a question about your documents")
    if not prompt:
        return

    messages.append({"role": "user", "content": prompt})
    with st.chat_message("user"):
        st.markdown(prompt)

    with st.chat_message("assistant"):
        with st.spinner("Thinking..."):
            try:
                result = make_api_request("/api/chat", "POST", {"message": prompt})
                reply = {"role": "assistant", "content": result["response"], "sources": result.get("sources", [])}
            except ApiError as e:
                reply = {"role": "assistant", "content": f"⚠️ {e.message}"}

        st.markdown(reply["content"])
        if reply.get("sources"):
            st.caption(format_sources(reply["sources"]))

    messages.append(reply)


def format_sources(sources) -> str:
    seen = []
    for source in sources:
        label = source.get("name") or source.get("documentId") or "document"
        if source.get("pageNumber"):
            label = f"{label} (p. {source['pageNumber']})"
        if label not in seen:
            seen.append(label)
    return "Sources: " + ", ".join(seen)


if __name__ == "__main__":
    main()
