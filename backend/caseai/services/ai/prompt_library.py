"""
Default prompt templates (version 1.0).

Every template asks for a single JSON object with snake_case keys; the
matching strict output schemas live in caseai.services.ai.schema.
"""
from typing import List

from caseai.models.entities import JUDGE_OPERATION, AIOperation
from caseai.services.ai.templates import PromptTemplate, PromptTemplateEngine

CASE_SYSTEM_PROMPT = (
    "You are an assistant for caseworkers processing administrative applications. "
    "Base every statement on the case data provided. Do not invent facts. "
    "Answer with a single JSON object and nothing else."
)

JUDGE_SYSTEM_PROMPT = (
    "You are an expert AI evaluator. Score AI-generated output strictly against the rubric. "
    "Be objective and consistent. Answer with a single JSON object and nothing else."
)

OVERALL_SUMMARY = PromptTemplate(
    id="overall_summary",
    version="1.0",
    name="Overall Case Summary",
    description="Generate comprehensive case summary with recommendations",
    operation=AIOperation.GENERATE_SUMMARY.value,
    system=CASE_SYSTEM_PROMPT,
    user="""Please analyze the following case data and provide an overall summary.

Case ID: {{case_id}}
Status: {{status}}
Current Step: {{current_step}}
Application Type: {{application_type}}
Applicant: {{applicant_name}}
Submission Date: {{submission_date}}

Documents: {{documents}}

Form Data: {{form_data}}

Case Notes: {{case_notes}}

Previous AI Summaries: {{previous_summaries}}

Please provide:
1. A comprehensive summary of the case
2. Key recommendations for next steps
3. Your confidence level (0-1) in the analysis

Format your response as JSON with the following structure:
{
  "content": "detailed summary here",
  "recommendations": ["recommendation 1", "recommendation 2"],
  "confidence": 0.85
}""",
    optional_variables=["case_notes", "previous_summaries"],
    parameters={"max_tokens": 1000, "temperature": 0.3},
)

STEP_RECOMMENDATION = PromptTemplate(
    id="step_recommendation",
    version="1.0",
    name="Step-Specific Recommendations",
    description="Generate recommendations for specific process steps",
    operation=AIOperation.GENERATE_RECOMMENDATION.value,
    system=CASE_SYSTEM_PROMPT,
    user="""Please provide specific recommendations for the following case at step: {{step}}

Case ID: {{case_id}}
Current Status: {{status}}
Current Step: {{current_step}}
Application Type: {{application_type}}
Applicant: {{applicant_name}}

Recent AI Summaries: {{recent_summaries}}

Case Notes: {{recent_notes}}

For step "{{step}}", please provide:
1. A short explanation of what the step requires for this case
2. Specific recommendations for this step
3. Priority level (low, medium, high)
4. Confidence in recommendations (0-1)

Format your response as JSON:
{
  "content": "what this step requires for this case",
  "recommendations": ["specific recommendation 1", "specific recommendation 2"],
  "priority": "medium",
  "confidence": 0.8
}""",
    optional_variables=["recent_summaries", "recent_notes"],
    parameters={"max_tokens": 800, "temperature": 0.4},
)

APPLICATION_ANALYSIS = PromptTemplate(
    id="application_analysis",
    version="1.0",
    name="Application Analysis",
    description="Analyze new application submissions",
    operation=AIOperation.ANALYZE_APPLICATION.value,
    system=CASE_SYSTEM_PROMPT,
    user="""Please analyze the following application data:

Application Type: {{application_type}}
Applicant: {{applicant_name}}
Email: {{applicant_email}}
Submission Date: {{submission_date}}

Documents Provided: {{documents}}

Form Data: {{form_data}}

Please provide:
1. A summary of the application
2. Key points identified
3. Potential issues or concerns
4. Recommended actions
5. Priority level (low, medium, high, urgent)
6. Estimated processing time
7. Required documents that may be missing

Format as JSON:
{
  "summary": "application summary",
  "key_points": ["point 1", "point 2"],
  "potential_issues": ["issue 1", "issue 2"],
  "recommended_actions": ["action 1", "action 2"],
  "priority_level": "medium",
  "estimated_processing_time": "2-3 business days",
  "required_documents": ["document 1", "document 2"]
}""",
    optional_variables=["documents"],
    parameters={"max_tokens": 1200, "temperature": 0.2},
)

FINAL_SUMMARY = PromptTemplate(
    id="final_summary",
    version="1.0",
    name="Final Case Summary",
    description="Generate final summary for case conclusion",
    operation=AIOperation.GENERATE_FINAL_SUMMARY.value,
    system=CASE_SYSTEM_PROMPT,
    user="""Please generate a final summary for the concluded case:

Case ID: {{case_id}}
Final Status: {{status}}
Application Type: {{application_type}}
Applicant: {{applicant_name}}

Process History:
{{process_history}}

AI Summaries Generated:
{{ai_summaries}}

Case Notes:
{{case_notes}}

Please provide:
1. Overall summary of the case
2. Key decisions made
3. Final outcomes
4. Process history summary
5. Recommended decision (approved, denied, requires_additional_info)
6. Supporting rationale

Format as JSON:
{
  "overall_summary": "comprehensive case summary",
  "key_decisions": ["decision 1", "decision 2"],
  "outcomes": ["outcome 1", "outcome 2"],
  "process_history": ["step 1", "step 2"],
  "recommended_decision": "approved",
  "supporting_rationale": ["rationale 1", "rationale 2"]
}""",
    optional_variables=["process_history", "ai_summaries", "case_notes"],
    parameters={"max_tokens": 1500, "temperature": 0.1},
)

COMPLETENESS_VALIDATION = PromptTemplate(
    id="completeness_validation",
    version="1.0",
    name="Case Completeness Validation",
    description="Validate case completeness before conclusion",
    operation=AIOperation.VALIDATE_COMPLETENESS.value,
    system=CASE_SYSTEM_PROMPT,
    user="""Please validate the completeness of this case:

Case ID: {{case_id}}
Current Status: {{status}}
Current Step: {{current_step}}
Application Type: {{application_type}}

Documents: {{documents}}
Form Data Fields: {{form_data_fields}}

Process Steps Completed: {{completed_steps}}

Please evaluate:
1. Is the case complete for its current status?
2. What steps might be missing?
3. What documents might be missing?
4. Recommendations for completion
5. Confidence in assessment (0-1)

Format as JSON:
{
  "is_complete": true,
  "missing_steps": ["step1", "step2"],
  "missing_documents": ["doc1", "doc2"],
  "recommendations": ["recommendation 1", "recommendation 2"],
  "confidence": 0.9
}""",
    optional_variables=["documents", "form_data_fields"],
    parameters={"max_tokens": 800, "temperature": 0.2},
)

MISSING_FIELDS = PromptTemplate(
    id="missing_fields",
    version="1.0",
    name="Missing Fields Detection",
    description="Detect missing fields in application data",
    operation=AIOperation.DETECT_MISSING_FIELDS.value,
    system=CASE_SYSTEM_PROMPT,
    user="""Please analyze this application for missing fields:

Application Type: {{application_type}}
Applicant: {{applicant_name}}
Email: {{applicant_email}}

Current Form Data: {{form_data}}
Documents Provided: {{documents}}

Please identify:
1. Missing required fields
2. Missing recommended fields
3. Missing optional fields that would be helpful
4. Completeness score (0-100)
5. Priority actions needed
6. Estimated time to complete missing items

Format as JSON:
{
  "missing_fields": [
    {
      "field_name": "field name",
      "field_type": "text/number/file/etc",
      "importance": "required",
      "suggested_action": "specific action needed"
    }
  ],
  "completeness_score": 75,
  "priority_actions": ["action 1", "action 2"],
  "estimated_completion_time": "1-2 hours"
}""",
    optional_variables=["documents"],
    parameters={"max_tokens": 1000, "temperature": 0.3},
)

JUDGE_RUBRIC = PromptTemplate(
    id="judge_rubric",
    version="1.0",
    name="LLM-as-a-Judge Evaluation",
    description="Evaluate AI output quality using structured scoring criteria",
    operation=JUDGE_OPERATION,
    system=JUDGE_SYSTEM_PROMPT,
    user="""Your task is to evaluate the quality of an AI-generated output produced for the operation "{{operation}}".

**Reference Context:**
{{reference_context}}

**AI Output to Evaluate:**
{{produced_output}}

**Evaluation Criteria ({{rubric_name}} v{{rubric_version}}):**
Score the output on each criterion using a scale of {{scale_min}}-{{scale_max}} (where {{scale_min}} is very poor and {{scale_max}} is excellent):

{{criteria_text}}

**Instructions:**
- Provide a numeric score for every criterion listed, and no others
- Give a short reasoning for each score
- Be objective and consistent in your evaluation

**Response Format (JSON):**
{
  "scores": {{scores_example}},
  "reasoning": {{reasoning_example}},
  "comments": "<optional overall remarks>"
}""",
    optional_variables=["reference_context"],
    parameters={"temperature": 0.1, "max_tokens": 2000, "top_p": 0.9},
)

JUDGE_RUBRIC_COT = PromptTemplate(
    id="judge_rubric_cot",
    version="1.0",
    name="LLM-as-a-Judge with Chain-of-Thought",
    description="Evaluate AI output quality with step-by-step reasoning for bias mitigation",
    operation=JUDGE_OPERATION,
    system=JUDGE_SYSTEM_PROMPT,
    user="""Your task is to evaluate the quality of an AI-generated output produced for the operation "{{operation}}", reasoning carefully before scoring.

**Reference Context:**
{{reference_context}}

**AI Output to Evaluate:**
{{produced_output}}

**Step-by-Step Evaluation Process:**

1. **Initial Assessment**: What is the output trying to accomplish? What did the reference context call for?
2. **Content Analysis**: What specific information, claims or recommendations does the output contain?
3. **Criterion Analysis**: Examine each criterion below in turn before assigning a score.

**Evaluation Criteria ({{rubric_name}} v{{rubric_version}}), scale {{scale_min}}-{{scale_max}}:**

{{criteria_text}}

Record your step-by-step analysis in the "reasoning" entries, then give the scores.

**Final Evaluation (JSON only):**
{
  "scores": {{scores_example}},
  "reasoning": {{reasoning_example}},
  "comments": "<optional overall remarks>"
}""",
    optional_variables=["reference_context"],
    parameters={"temperature": 0.1, "max_tokens": 3000, "top_p": 0.9},
)

DEFAULT_TEMPLATES: List[PromptTemplate] = [
    OVERALL_SUMMARY,
    STEP_RECOMMENDATION,
    APPLICATION_ANALYSIS,
    FINAL_SUMMARY,
    COMPLETENESS_VALIDATION,
    MISSING_FIELDS,
    JUDGE_RUBRIC,
    JUDGE_RUBRIC_COT,
]


def build_default_engine() -> PromptTemplateEngine:
    return PromptTemplateEngine(DEFAULT_TEMPLATES)
