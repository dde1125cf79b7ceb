"""Prompt templates."""

CERT_CATEGORIES = """DoS: denial-of-service attacks, where one or many computers are used to take a service, device or network out of operation.
Fraude: fraud attempts, i.e. incidents trying to obtain an advantage (financial or not) by deceit, including phishing pages and malware stealing information or credentials.
Invasão: a successful attack resulting in unauthorized access to a computer or network.
Scan: network scans, password brute forcing, unsuccessful exploitation attempts and other failed attacks against publicly exposed services.
Web: attacks specifically aimed at compromising web servers or defacing web pages.
Outros: incidents that fit none of the other categories."""

NIST_CATEGORIES = """CAT 0 (Exercise/Network Defense Testing): security tests, simulations or exercises.
CAT 1 (Unauthorized Access): logical or physical access gained without permission.
CAT 2 (Denial of Service): disruption of the normal functionality of a network or service.
CAT 3 (Malicious Code): successful installation of malware (viruses, worms, trojans, etc.).
CAT 4 (Improper Usage): violations of acceptable computing use policies.
CAT 5 (Scans/Probes/Attempted Access): reconnaissance or unsuccessful attempts to gain access.
CAT 6 (Investigation): potential incidents under review, such as reports or unexplained anomalies."""


CATEGORIZE_PROMPT = """You are an information security specialist.

{instructions}

CRITICAL RULES:
1. Every ID must appear EXACTLY ONCE in the classifications
2. The number of classifications MUST EQUAL the number of incidents ({batch_size})
3. Use ONLY the IDs listed below, unmodified
4. Do NOT duplicate any ID

Available IDs: {batch_ids}

For each incident return the fields id, category, reason and timestamp.
Explain in reason why you chose that category.
Do NOT include the incident content in the result; use it only for the analysis.

Incidents: {incidents}

Return ONLY valid JSON of the form:
{{"classifications": [{{"id": "...", "category": "...", "reason": "...", "timestamp": "..."}}]}}"""


CERT_INSTRUCTIONS = """Analyze the following {batch_size} security incidents and classify each one into one of the CERT categories:
{categories}"""

LLM_INSTRUCTIONS = """Analyze the following {batch_size} incidents and create appropriate categories for them.
Be consistent when naming categories."""

NIST_INSTRUCTIONS = """Analyze the following {batch_size} incidents and classify them according to the NIST SP 800-61r2 categories:
{categories}"""


RECOMMEND_SYSTEM_PROMPT = """You are an information security specialist.
Analyze the security incident provided and suggest practical, specific
recommendations to resolve the problem and prevent similar occurrences.

Provide objective, actionable recommendations."""

RECOMMEND_PROMPT = """Analyze this incident and provide recommendations:
{incident_content}"""


CHAT_SYSTEM_PROMPT = """You are an assistant specialized in information security.
Use ONLY the information provided below to answer.
If the context holds nothing relevant, answer "I could not find enough information to answer this question."

Incident context:
{context}"""
